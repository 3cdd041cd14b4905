"""CognitiveCoach core: context compaction, resilient generation, caching."""

__version__ = "0.1.0"
