# =============================================================================
# Multi-Tenant Database Gateway
# =============================================================================
# Provisions one isolated database per project, keeps a bounded connection
# pool per project, introspects schemas, executes caller SQL behind a
# dangerous-statement guard, records every attempt, and throttles request
# volume per limiter class.
#
# Package structure:
#   dbgateway/
#   ├── api/          → FastAPI routers (projects, query, history, ai, admission)
#   ├── db/           → Metadata engine, sessions, ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → Pool registry, provisioning, introspection, execution,
#                        history, rate limiting, AI assistant
# =============================================================================
