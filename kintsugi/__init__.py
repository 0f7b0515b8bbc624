"""Kintsugi: safety moderation for an AI mental-health support chat.

Every assistant reply is scored by deterministic rules and an LLM critic
before it reaches the user. High-risk replies are held for human review,
and reviewer corrections are fed back into future generations.
"""

__version__ = "0.1.0"
