# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - projects.py: project lifecycle, schema, table rows
#   - query.py: SQL execution endpoint
#   - history.py: query history listing and editing
#   - ai.py: assistant endpoints (titles, error explanations, diagrams)
#   - admission.py: rate-limit check for sibling services
#   - deps.py: identity, admission and component dependencies
# =============================================================================
