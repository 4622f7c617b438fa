"""
API orchestration boundary for Whisperlite backend.

Design intent:
- Expose thin, typed endpoints for session/stress/voice/recap/support flows.
- Keep request validation explicit and failure modes predictable.
- Orchestrate modules without embedding domain logic in routers.
"""
