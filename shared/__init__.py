"""Shared configuration, errors, models and utilities."""
