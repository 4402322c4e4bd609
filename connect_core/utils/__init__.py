"""Logging, encryption and alerting utilities."""
