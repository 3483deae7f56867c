"""Core module - shared billing primitives.

Holds the canonical data models, configuration, money helpers, domain
exceptions and observability used by every pipeline stage.

Platform-specific wire formats belong in /connectors/.
"""

__version__ = "1.0.0"
