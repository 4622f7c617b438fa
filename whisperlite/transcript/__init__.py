"""
Transcript module boundary for Whisperlite backend.

Design intent:
- Turn realtime partial/final events into one coherent live transcript.
- Keep the streaming gate and per-connection counters next to the assembler.
"""
