# =============================================================================
# Database Package — metadata database
# =============================================================================
# Async SQLAlchemy engine, session management, and ORM models for the
# gateway's own records (projects, query history). Tenant databases are
# reached through services/pool_registry.py, never through this package.
# =============================================================================
