"""TopicBot: groups news items into topics and ranks them per viewer."""

__version__ = "0.1.0"
