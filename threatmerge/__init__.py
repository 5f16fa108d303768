"""threatmerge — merges threat models held in a relational store and a blob store."""

__version__ = "1.0.0"
