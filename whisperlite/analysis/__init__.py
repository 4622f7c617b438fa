"""
Analysis module boundary for Whisperlite backend.

Design intent:
- Route every generative call through one Gemini adapter.
- Keep stress, social-context and recap prompts next to their parsers.
- Prefer calm fallbacks over hard failures where the student is waiting.
"""
