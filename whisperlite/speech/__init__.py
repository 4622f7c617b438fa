"""
Speech module boundary for Whisperlite backend.

Design intent:
- Hold the ElevenLabs adapters (TTS, batch STT, realtime STT).
- Keep provider-specific request shapes out of API handlers.
- Offer a scripted realtime transcriber for local runs and tests.
"""
