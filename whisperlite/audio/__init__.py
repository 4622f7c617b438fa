"""
Audio helpers for the live listener.

Design intent:
- Convert browser capture frames to the PCM the transcriber expects.
- Reject unsupported formats at stream start, not mid-stream.
"""
