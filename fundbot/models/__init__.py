# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - events.py:    Slack webhook payloads and the normalised InboundEvent
#   - state.py:     entities held in the shared keyed stores
#   - responses.py: HTTP response shapes (health, acks, admin stats)
# =============================================================================
