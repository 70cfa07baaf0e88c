"""FeatureHub: a multi-tenant feature store."""

__version__ = "0.1.0"
