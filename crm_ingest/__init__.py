"""Bulk customer/company import service."""
