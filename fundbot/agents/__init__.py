# =============================================================================
# Agents Package — LangGraph Pipeline Orchestration
# =============================================================================
#   - orchestrator.py: LangGraph graph — one run per inbound event, routes
#     each event to exactly one terminal state and drives all side effects
#   - prompts.py: system prompt assembly and help text
# =============================================================================
