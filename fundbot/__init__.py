# =============================================================================
# FundBot Gateway
# =============================================================================
# A Slack assistant that answers portfolio and market questions with an LLM.
# Every inbound message runs through one pipeline: dedupe → sanitise → admit
# (rate + budget) → cache → grounding → thread context → generate → reply.
#
# Package structure:
#   fundbot/
#   ├── api/          → FastAPI route handlers (Slack webhook, admin stats)
#   ├── agents/       → LangGraph pipeline orchestration and prompts
#   ├── models/       → Pydantic V2 wire, state and response schemas
#   └── services/     → Pipeline stages, state stores, LLM + Slack clients
# =============================================================================
