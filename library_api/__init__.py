"""Library Management API - Core Application Package

This package contains the application modules including:
- API endpoints (api.py)
- CLI interface (main.py)
- Services: accounts, catalog, borrowing, payments, analytics (services/)
- Data models (models.py)
- Database layer (database.py)
"""

__version__ = "1.0.0"
