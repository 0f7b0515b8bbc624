"""Kintsugi services.

- safety_service: Rule detection fused with an LLM critic
- llm_service: Responder and critic LLM capabilities
- review_service: Message lifecycle, human review, feedback memory
- chat_service: HTTP surface
"""
