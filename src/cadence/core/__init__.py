"""Core building blocks: constants, logging, configuration and errors."""
