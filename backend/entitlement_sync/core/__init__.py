"""Core module for configuration, persistence, logging and metrics."""
