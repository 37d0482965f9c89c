"""
Pydantic data models package.

Contains the unit of data flowing through the shipping pipeline.
"""

from .record import AttributeValue, Batch, LogLevel, LogRecord

__all__ = [
    "AttributeValue",
    "Batch",
    "LogLevel",
    "LogRecord",
]
