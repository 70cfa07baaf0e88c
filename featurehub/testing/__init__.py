"""Test doubles for FeatureHub's external collaborators."""

from featurehub.testing.mocks import MockRedis

__all__ = ["MockRedis"]
