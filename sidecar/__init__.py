"""Message-to-knowledge-graph extraction with role-governed approval."""

__version__ = "0.1.0"
