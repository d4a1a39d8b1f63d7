"""Appointment-scoped temporary chat for the pet-service platform."""

__version__ = "1.0.0"
