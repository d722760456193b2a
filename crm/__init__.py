"""Utility CRM ticketing API."""
