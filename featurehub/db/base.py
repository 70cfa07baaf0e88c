"""SQLAlchemy declarative base for FeatureHub tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
