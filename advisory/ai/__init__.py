"""
Advisory Engagement Platform
AI module.

Submodules:
    - gateway: LLM Gateway (provider routing, retry, fallback)
    - parsing: JSON extraction from LLM replies
    - assistants: analysis assistants used by the lifecycle orchestrator
"""
