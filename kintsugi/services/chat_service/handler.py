"""Chat Service HTTP handler.

Thin Flask adapter over the moderation core. Every assistant reply is
scored by the SafetyPipeline before it is stored; replies that fuse to
HIGH risk are withheld until a human reviewer finalizes them.

Content of a reply pending review never leaves this service unless the
caller explicitly asks for it (reviewer endpoints, ``?reveal=true``).
"""
import logging
import os
from typing import Dict, List, Tuple

from flask import Flask, jsonify, request

from kintsugi.shared.database import get_connection_manager
from kintsugi.shared.models import Message, RiskVerdict
from kintsugi.shared.utils import (
    BackgroundEventLoop,
    configure_pii_salt,
    hash_pii,
    hash_text_for_audit,
    is_blank,
)
from kintsugi.services.llm_service import (
    KintsugiLLMConfig,
    LLMErrorCategory,
    ResponderError,
    build_critic_llm,
    build_responder,
)
from kintsugi.services.review_service import (
    CorrectionRequiredError,
    FeedbackMemory,
    InMemoryModerationStore,
    InvalidReviewInputError,
    InvalidReviewStateError,
    InvalidVerdictError,
    MessageNotFoundError,
    ModerationStore,
    ReviewWorkflow,
    check_review_fields,
)
from kintsugi.services.review_service.correction import CorrectionDrafter
from kintsugi.services.review_service.metrics import DAILY_SERIES_DAYS, compute_moderation_metrics
from kintsugi.services.review_service.repository import PostgresModerationStore
from kintsugi.services.safety_service import (
    CriticAdapter,
    PatternDetector,
    SafetyConfig,
    SafetyPipeline,
)

logger = logging.getLogger(__name__)

app = Flask(__name__)

pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)


def _build_store() -> ModerationStore:
    backend = os.getenv("STORE_BACKEND", "memory").lower()
    if backend == "postgres":
        return PostgresModerationStore(get_connection_manager())
    return InMemoryModerationStore()


safety_config = SafetyConfig.from_env()
llm_config = KintsugiLLMConfig.from_env()

store = _build_store()
feedback_memory = FeedbackMemory(store, limit=llm_config.feedback_memory_limit)
workflow = ReviewWorkflow(store, feedback_memory)

pipeline = SafetyPipeline(
    PatternDetector(safety_config.rule_config()),
    CriticAdapter(build_critic_llm(llm_config), safety_config),
)

responder = build_responder(llm_config)
drafter = CorrectionDrafter(responder, workflow) if responder else None

# LLM clients keep connections bound to the loop that opened them
event_loop = BackgroundEventLoop("chat-service-async")

_RESPONDER_ERROR_STATUS = {
    LLMErrorCategory.AUTH: 502,
    LLMErrorCategory.QUOTA: 429,
    LLMErrorCategory.TIMEOUT: 504,
    LLMErrorCategory.OTHER: 500,
}

_RESPONDER_ERROR_MESSAGE = {
    LLMErrorCategory.AUTH: "Responder authentication failed",
    LLMErrorCategory.QUOTA: "Responder quota exceeded, try again later",
    LLMErrorCategory.TIMEOUT: "Responder timed out",
    LLMErrorCategory.OTHER: "Failed to generate a reply",
}


def _responder_error(error: ResponderError):
    return jsonify({
        "error": _RESPONDER_ERROR_MESSAGE[error.category],
        "category": error.category.value,
    }), _RESPONDER_ERROR_STATUS[error.category]


def _turns(messages: List[Message]) -> List[Dict[str, str]]:
    # Replies still withheld from the user are not part of the conversation
    return [
        {"sender": m.sender.value, "content": m.content}
        for m in messages if m.is_visible
    ]


async def _reply_and_score(
    history: List[Dict[str, str]],
    user_text: str,
    feedback_digest: str,
) -> Tuple[str, RiskVerdict]:
    reply = await responder.generate_reply(history, user_text, feedback_digest)
    verdict = await pipeline.evaluate(user_text, reply, history)
    return reply, verdict


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint.

    Returns:
        200 with service status
    """
    return jsonify({
        "status": "healthy",
        "service": "chat-service",
        "rules_version": safety_config.rules_version,
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check - store reachable and responder configured.

    Returns:
        200 if ready, 503 if not
    """
    store_status = store.health_check()
    body = {
        "store": store_status,
        "responder_configured": responder is not None,
        "critic_configured": pipeline.critic.llm is not None,
    }
    if not store_status.get("healthy"):
        return jsonify({"status": "not_ready", "reason": "store_unavailable", **body}), 503
    if responder is None:
        return jsonify({"status": "not_ready", "reason": "responder_not_configured", **body}), 503
    return jsonify({"status": "ready", **body}), 200


@app.route("/chat/send", methods=["POST"])
def send_message():
    """Send a user message and get the moderated assistant reply.

    Request Body:
        {
            "conversation_id": "conv_123",
            "message": "User message text"
        }

    Response:
        {
            "user_message": {...},
            "message": {...} (content withheld while pending review),
            "status": "pending" | "delivered",
            "risk_level": "info" | "low" | "medium" | "high"
        }

    No assistant message is stored when generation fails.
    """
    try:
        data = request.get_json(silent=True)
        if not data:
            logger.warning("CHAT_REQUEST_INVALID", extra={"reason": "empty_body"})
            return jsonify({"error": "Request body required"}), 400

        conversation_id = data.get("conversation_id")
        text = data.get("message")
        if is_blank(conversation_id) or is_blank(text):
            logger.warning("CHAT_REQUEST_INVALID", extra={"reason": "missing_fields"})
            return jsonify({"error": "Missing required fields: conversation_id, message"}), 400

        if responder is None:
            return jsonify({"error": "Responder is not configured"}), 503

        history = _turns(workflow.history(conversation_id))
        user_message = workflow.record_user_message(conversation_id, text)

        logger.info(
            "CHAT_MESSAGE_RECEIVED",
            extra={
                "conversation_id": conversation_id,
                "message_id": user_message.id,
                "message_hash": hash_text_for_audit(text),
                "history_turns": len(history),
            }
        )

        try:
            reply, verdict = event_loop.run(
                _reply_and_score(history, text, feedback_memory.digest())
            )
        except ResponderError as e:
            return _responder_error(e)

        assistant_message = workflow.record_assistant_message(conversation_id, reply, verdict)

        return jsonify({
            "user_message": user_message.to_dict(),
            "message": assistant_message.to_dict(),
            "status": "pending" if assistant_message.flagged else "delivered",
            "risk_level": verdict.risk_level.value,
        }), 200

    except Exception as e:
        logger.error(
            "CHAT_SEND_ERROR",
            extra={"error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return jsonify({"error": "Failed to process message"}), 500


@app.route("/messages/<message_id>", methods=["GET"])
def get_message(message_id: str):
    """Boundary-safe view of one message.

    Query parameters:
        reveal: "true" to include content of a reply pending review
    """
    reveal = request.args.get("reveal", "false").lower() == "true"
    try:
        message = workflow.get_message(message_id)
    except MessageNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(message.to_dict(reveal=reveal)), 200


@app.route("/review/queue", methods=["GET"])
def review_queue():
    """Replies awaiting review, newest first, with content for reviewers."""
    limit = request.args.get("limit", 50, type=int)
    messages = workflow.review_queue(limit)
    return jsonify({
        "messages": [m.to_dict(reveal=True) for m in messages],
        "count": len(messages),
    }), 200


@app.route("/review/reviewed", methods=["GET"])
def reviewed_messages():
    limit = request.args.get("limit", 50, type=int)
    pairs = workflow.reviewed_messages(limit)
    return jsonify({
        "reviews": [
            {"review": review.to_dict(), "message": message.to_dict()}
            for review, message in pairs
        ],
        "count": len(pairs),
    }), 200


@app.route("/review", methods=["POST"])
def submit_review():
    """Submit a human verdict for a reply pending review.

    Request Body:
        {
            "message_id": "msg_123",
            "reviewer_id": "reviewer_1",
            "verdict": "safe" | "unsafe",
            "feedback": "optional reviewer feedback",
            "corrected_response": "required when unsafe, unless drafted"
        }

    An unsafe verdict with feedback but no corrected response gets a
    correction drafted by the Responder.
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    message_id = data.get("message_id")
    reviewer_id = data.get("reviewer_id")
    verdict = data.get("verdict")
    feedback = data.get("feedback")
    corrected_response = data.get("corrected_response")

    if is_blank(message_id) or is_blank(reviewer_id) or verdict is None:
        return jsonify({"error": "Missing required fields: message_id, reviewer_id, verdict"}), 400

    drafted = False
    try:
        check_review_fields(message_id, reviewer_id, feedback, corrected_response)
        wants_draft = (
            str(verdict).strip().lower() == "unsafe"
            and is_blank(corrected_response)
            and not is_blank(feedback)
        )
        if wants_draft and drafter is not None:
            corrected_response = event_loop.run(drafter.draft(message_id, feedback))
            drafted = True

        outcome = workflow.submit_review(
            message_id,
            reviewer_id,
            verdict,
            feedback=feedback,
            corrected_response=corrected_response,
        )
    except MessageNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InvalidReviewStateError as e:
        return jsonify({"error": str(e)}), 409
    except (InvalidVerdictError, InvalidReviewInputError, CorrectionRequiredError) as e:
        return jsonify({"error": str(e)}), 400
    except ResponderError as e:
        return _responder_error(e)

    logger.info(
        "REVIEW_ACCEPTED",
        extra={
            "message_id": message_id,
            "reviewer_id_hash": hash_pii(reviewer_id),
            "correction_drafted": drafted,
        }
    )
    return jsonify({**outcome.to_dict(), "correction_drafted": drafted}), 200


@app.route("/metrics", methods=["GET"])
def metrics():
    """Moderation metrics for the admin dashboard."""
    days = request.args.get("days", DAILY_SERIES_DAYS, type=int)
    return jsonify(compute_moderation_metrics(store, days=max(days, 1)).to_dict()), 200


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    port = int(os.getenv("PORT", "8000"))
    app.run(host="0.0.0.0", port=port, debug=False)
