"""Lending Desk - Services Package

Clients for the external APIs the desk depends on:
- Airtable record store (books, students, loans)
- Google Cloud Vision text extraction
- Shared HTTP client
"""
