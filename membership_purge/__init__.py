"""Remove group memberships from disabled directory accounts"""

__version__ = "1.0.0"
