"""Library Backend - Services Package

This package contains service modules for external integrations:
- Email notification dispatcher (SMTP)
"""
