"""
Routers module - API endpoint handlers organized by feature.

- conversation: parsed intents, raw commands and session lifecycle
"""
