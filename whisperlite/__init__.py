"""
Whisperlite backend package.

Design intent:
- Serve class-session, stress and support flows for the student app.
- Relay a live classroom transcript with calming context updates.
- Keep vendor adapters (ElevenLabs/Gemini) thin and out of route handlers.
"""

__version__ = "0.1.0"
