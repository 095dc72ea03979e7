"""Instrumented demo service with a self-driving, fault-injecting traffic generator."""

__version__ = "1.0.0"
