# =============================================================================
# Services Package — Pipeline Stages & Integrations
# =============================================================================
# Contains the business logic, separated from API handlers:
#   - event_gate.py: duplicate-delivery suppression
#   - sanitizer.py: message validation and cleaning
#   - admission.py: per-requester rate limit and daily budget
#   - cache.py: response cache with query-dependent TTLs
#   - context_store.py: bounded per-thread conversation memory
#   - invoker.py: bounded retries around the LLM provider
#   - llm.py: multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - grounding.py: concurrent data-snapshot fetch under one timeout
#   - slack.py: Slack Web API client
#   - state.py: keyed stores (in-memory, Redis) behind one protocol
#   - signature.py, pricing.py, errors.py: shared helpers
# =============================================================================
