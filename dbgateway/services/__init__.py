# =============================================================================
# Services Package — Business Logic
# =============================================================================
#   - pool_registry.py: one bounded connection pool per tenant project
#   - provisioning.py: CREATE / DROP DATABASE on the tenant host
#   - introspection.py: schema snapshots through SQLAlchemy's Inspector
#   - executor.py: guarded SQL execution with history recording
#   - history.py: query history writes and filtered reads
#   - rate_limiter.py: token buckets per limiter class (memory / Redis)
#   - projects.py: caller-facing facade with ownership checks
#   - llm.py, assistant.py: AI assistant over Anthropic / OpenAI-compatible APIs
# =============================================================================
