"""Durable store: declarative base, engine handle and ORM models."""
