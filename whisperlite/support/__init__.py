"""
Student support tools: context clues and trusted-adult alerts.
"""
