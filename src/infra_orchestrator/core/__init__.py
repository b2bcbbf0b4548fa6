"""Core data models, graph utilities and errors."""
