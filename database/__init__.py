"""
LiveRelay Database Module
SQLite storage with an encrypted app credential
"""

from .crypto import TokenEncryptor
from .manager import DatabaseManager

__all__ = ['TokenEncryptor', 'DatabaseManager']
