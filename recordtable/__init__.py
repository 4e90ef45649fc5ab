"""Typed record storage on DynamoDB."""

__version__ = "0.1.0"
