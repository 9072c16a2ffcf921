"""
Persistence of canonical entities (SQLAlchemy async).
"""
