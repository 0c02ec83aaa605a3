"""
Integrations package: links third-party accounts and syncs their data into lists.

Architecture:
- base.py: BaseProvider contract shared by every provider adapter
- providers/: One adapter per provider (spotify, strava, plaid, ...)
- service.py: IntegrationsService orchestrator and provider registry
- persistence.py: Links, history, lists, categories and deduplicated items
- token_store.py: Encrypted OAuth credentials
- state.py: OAuth state encoding
- aggregation.py: Read-side views over synced list items
- router.py: FastAPI endpoints
- tasks.py: Celery sync jobs

Design Principles:
- Tokens are encrypted at rest using Fernet
- Items are keyed by (list, user list, title, provider, external id) so re-syncs never duplicate
- One failing resource never aborts the rest of a sync
"""
