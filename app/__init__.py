"""
Healthcare Consultation API

A FastAPI-based service where doctors and patients register, patients book
consultation slots, and appointments are tracked through their lifecycle and
rated.
"""

__version__ = "1.0.0"
