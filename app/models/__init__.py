# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, separate from the ORM models in
# app/db/models.py. Embedding vectors are never part of a response.
# =============================================================================
