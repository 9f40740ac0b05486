# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - events.py: Slack Events API webhook (signature-checked, fast ack)
#   - admin.py: Bearer-protected cache and requester statistics
#   - deps.py: Shared dependencies (signature, admin auth, orchestrator)
# =============================================================================
