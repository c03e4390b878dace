# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, separate from the ORM models in
# dbgateway/db/models.py. Project responses never carry the stored
# connection string.
# =============================================================================
