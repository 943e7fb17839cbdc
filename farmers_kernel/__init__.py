"""
Farmers Kernel

Shared foundation for the farmer registration platform:
- Local farmer registry (farmers, links, farms and their children)
- Identity authority contract
- Structured logging and typed exceptions
- Database engine, session, and clock management
"""

__version__ = "0.1.0"
