"""Lending Desk - school library lending over a chat-style web wizard

This package contains:
- API endpoints (api.py)
- Borrow / return / extend step machine (workflow.py)
- Lending rules (rules.py)
- Session store (sessions.py)
- Record DTOs and field normalization (models.py)
- Record-store access (records.py, services/)
- CLI interface (cli.py)
"""

__version__ = "1.0.0"
