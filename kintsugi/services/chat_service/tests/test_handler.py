"""Tests for Chat Service HTTP handler.

Module-level services are replaced per test with an in-memory store,
a mocked Responder and a safety pipeline whose critic LLM is mocked.
"""
import json
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from flask import Flask, jsonify, request
from werkzeug.serving import make_server

from kintsugi.shared.database import ConnectionManager, DatabaseConfig
from kintsugi.shared.models import RiskLevel, RiskVerdict
from kintsugi.shared.utils import configure_pii_salt
from kintsugi.services.llm_service.base_llm import (
    LLMConfig,
    LLMErrorCategory,
    LLMProvider,
    LLMResponse,
    OpenAILLM,
)
from kintsugi.services.llm_service.responder import Responder, ResponderError
from kintsugi.services.review_service import FeedbackMemory, InMemoryModerationStore, ReviewWorkflow
from kintsugi.services.review_service.repository import PostgresModerationStore
from kintsugi.services.safety_service import CriticAdapter, PatternDetector, SafetyPipeline
from kintsugi.services.safety_service.critic import CRITIC_PROMPT

HANDLER = "kintsugi.services.chat_service.handler"

SUPPORTIVE_REPLY = "I'm sorry you're feeling this way. I'm here to listen."

CRITIC_INFO = json.dumps({"issues": [], "risk_level": "info", "explanation": "Supportive."})
CRITIC_HIGH = json.dumps({
    "issues": ["emotional_invalidation"],
    "risk_level": "high",
    "explanation": "Dismisses the user.",
})


@pytest.fixture(autouse=True)
def setup_pii_salt():
    """Configure PII salt before each test."""
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def critic_reply(text):
    return LLMResponse(text=text, model="critic", provider="openai")


@pytest.fixture
def services():
    store = InMemoryModerationStore()
    feedback_memory = FeedbackMemory(store)
    workflow = ReviewWorkflow(store, feedback_memory)

    critic_llm = MagicMock()
    critic_llm.generate = AsyncMock(return_value=critic_reply(CRITIC_INFO))
    pipeline = SafetyPipeline(PatternDetector(), CriticAdapter(critic_llm))

    responder = MagicMock()
    responder.generate_reply = AsyncMock(return_value=SUPPORTIVE_REPLY)
    drafter = MagicMock()
    drafter.draft = AsyncMock(return_value="A drafted, kinder reply.")

    with patch.multiple(
        HANDLER,
        store=store,
        feedback_memory=feedback_memory,
        workflow=workflow,
        pipeline=pipeline,
        responder=responder,
        drafter=drafter,
    ):
        yield {
            "store": store,
            "workflow": workflow,
            "critic_llm": critic_llm,
            "responder": responder,
            "drafter": drafter,
        }


@pytest.fixture
def client(services):
    """Create Flask test client."""
    from kintsugi.services.chat_service.handler import app
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


def send(client, message, conversation_id="conv_1"):
    return client.post('/chat/send', json={'conversation_id': conversation_id, 'message': message})


def flag_next_reply(services, reply):
    services["responder"].generate_reply.return_value = reply
    services["critic_llm"].generate.return_value = critic_reply(CRITIC_HIGH)


class TestHealthEndpoints:
    """Tests for /health and /ready."""

    def test_health_returns_200(self, client):
        response = client.get('/health')
        data = json.loads(response.data)

        assert response.status_code == 200
        assert data['status'] == 'healthy'
        assert data['service'] == 'chat-service'
        assert 'rules_version' in data

    def test_ready_with_responder(self, client):
        response = client.get('/ready')

        assert response.status_code == 200
        assert json.loads(response.data)['status'] == 'ready'

    def test_not_ready_without_responder(self, client):
        with patch(f"{HANDLER}.responder", None):
            response = client.get('/ready')

        assert response.status_code == 503
        assert json.loads(response.data)['reason'] == 'responder_not_configured'

    @patch("kintsugi.shared.database.connection.pool.ThreadedConnectionPool")
    def test_ready_opens_postgres_pool(self, mock_pool_cls, client):
        store = PostgresModerationStore(ConnectionManager(DatabaseConfig(host="db")))

        with patch(f"{HANDLER}.store", store):
            response = client.get('/ready')

        assert response.status_code == 200
        assert json.loads(response.data)['store']['status'] == 'connected'
        mock_pool_cls.assert_called_once()

    @patch("kintsugi.shared.database.connection.pool.ThreadedConnectionPool")
    def test_not_ready_when_postgres_unreachable(self, mock_pool_cls, client):
        mock_pool_cls.side_effect = RuntimeError("connection refused")
        store = PostgresModerationStore(ConnectionManager(DatabaseConfig(host="db")))

        with patch(f"{HANDLER}.store", store):
            response = client.get('/ready')

        assert response.status_code == 503
        assert json.loads(response.data)['reason'] == 'store_unavailable'


class TestChatSend:
    """Tests for /chat/send."""

    def test_safe_reply_is_delivered(self, client, services):
        response = send(client, "I had a rough day at work")
        data = json.loads(response.data)

        assert response.status_code == 200
        assert data['status'] == 'delivered'
        assert data['risk_level'] == 'info'
        assert data['message']['content'] == SUPPORTIVE_REPLY
        assert data['message']['finalized'] is True
        assert data['user_message']['sender'] == 'user'

    def test_flagged_reply_is_withheld(self, client, services):
        flag_next_reply(services, "Whatever, you'll get over it.")

        response = send(client, "Everything feels pointless lately")
        data = json.loads(response.data)

        assert response.status_code == 200
        assert data['status'] == 'pending'
        assert data['risk_level'] == 'high'
        assert data['message']['content'] is None
        assert data['message']['content_withheld'] is True
        assert len(services["workflow"].review_queue()) == 1

    def test_history_and_digest_passed_to_responder(self, client, services):
        send(client, "first message")
        services["workflow"].feedback_memory.record("Be gentle", pattern="harsh reply")

        send(client, "second message")

        history, user_text, digest = services["responder"].generate_reply.call_args.args
        assert user_text == "second message"
        assert history == [
            {"sender": "user", "content": "first message"},
            {"sender": "assistant", "content": SUPPORTIVE_REPLY},
        ]
        assert digest.startswith("LEARNING FROM PAST FEEDBACK:")

    def test_withheld_reply_not_in_history(self, client, services):
        flag_next_reply(services, "Whatever, you'll get over it.")
        send(client, "first message")
        services["responder"].generate_reply.return_value = SUPPORTIVE_REPLY

        send(client, "second message")

        history = services["responder"].generate_reply.call_args.args[0]
        assert history == [{"sender": "user", "content": "first message"}]

    @pytest.mark.parametrize("category,status", [
        (LLMErrorCategory.AUTH, 502),
        (LLMErrorCategory.QUOTA, 429),
        (LLMErrorCategory.TIMEOUT, 504),
        (LLMErrorCategory.OTHER, 500),
    ])
    def test_responder_failure_stores_no_reply(self, client, services, category, status):
        services["responder"].generate_reply.side_effect = ResponderError("failed", category)

        response = send(client, "hello")

        assert response.status_code == status
        assert json.loads(response.data)['category'] == category.value
        senders = [m.sender.value for m in services["workflow"].history("conv_1")]
        assert senders == ["user"]

    def test_missing_fields(self, client):
        assert client.post('/chat/send', json={'message': 'hi'}).status_code == 400
        assert client.post('/chat/send', json={'conversation_id': 'c', 'message': '  '}).status_code == 400
        assert client.post('/chat/send', data='not json').status_code == 400

    def test_responder_not_configured(self, client):
        with patch(f"{HANDLER}.responder", None):
            response = send(client, "hello")

        assert response.status_code == 503


class TestMessageView:
    """Tests for /messages/<id>."""

    def test_reveal_flag(self, client, services):
        flag_next_reply(services, "Whatever, you'll get over it.")
        message_id = json.loads(send(client, "I feel awful").data)['message']['id']

        hidden = json.loads(client.get(f'/messages/{message_id}').data)
        revealed = json.loads(client.get(f'/messages/{message_id}?reveal=true').data)

        assert hidden['content'] is None
        assert revealed['content'] == "Whatever, you'll get over it."

    def test_unknown_message(self, client):
        assert client.get('/messages/msg_missing').status_code == 404


class TestReviewEndpoints:
    """Tests for /review, /review/queue and /review/reviewed."""

    @pytest.fixture
    def pending_id(self, client, services):
        flag_next_reply(services, "Whatever, you'll get over it.")
        return json.loads(send(client, "I feel awful").data)['message']['id']

    def test_queue_shows_content_to_reviewers(self, client, pending_id):
        data = json.loads(client.get('/review/queue').data)

        assert data['count'] == 1
        assert data['messages'][0]['id'] == pending_id
        assert data['messages'][0]['content'] == "Whatever, you'll get over it."

    def test_unsafe_review_with_correction(self, client, services, pending_id):
        response = client.post('/review', json={
            'message_id': pending_id,
            'reviewer_id': 'reviewer_1',
            'verdict': 'unsafe',
            'feedback': 'Do not dismiss feelings.',
            'corrected_response': "That sounds really painful. I'm here.",
        })
        data = json.loads(response.data)

        assert response.status_code == 200
        assert data['message']['content'] == "That sounds really painful. I'm here."
        assert data['message']['finalized'] is True
        assert data['feedback_recorded'] is True
        assert data['correction_drafted'] is False
        services["drafter"].draft.assert_not_called()

        reviewed = json.loads(client.get('/review/reviewed').data)
        assert reviewed['count'] == 1
        assert reviewed['reviews'][0]['review']['verdict'] == 'unsafe'

    def test_unsafe_review_drafts_correction(self, client, services, pending_id):
        response = client.post('/review', json={
            'message_id': pending_id,
            'reviewer_id': 'reviewer_1',
            'verdict': 'unsafe',
            'feedback': 'Be kinder.',
        })
        data = json.loads(response.data)

        assert response.status_code == 200
        assert data['correction_drafted'] is True
        assert data['message']['content'] == "A drafted, kinder reply."
        services["drafter"].draft.assert_awaited_once_with(pending_id, 'Be kinder.')

    @pytest.mark.parametrize("fields", [
        {"reviewer_id": 123, "verdict": "safe"},
        {"reviewer_id": "reviewer_1", "verdict": "unsafe", "feedback": 5},
        {"reviewer_id": "reviewer_1", "verdict": "unsafe", "corrected_response": {"text": "hi"}},
    ])
    def test_non_string_fields_rejected_before_review(self, client, services, pending_id, fields):
        response = client.post('/review', json={'message_id': pending_id, **fields})

        assert response.status_code == 400
        services["drafter"].draft.assert_not_called()
        message = services["workflow"].get_message(pending_id)
        assert message.flagged is True
        assert message.finalized is False

    def test_draft_failure_leaves_message_pending(self, client, services, pending_id):
        services["drafter"].draft.side_effect = ResponderError("slow", LLMErrorCategory.TIMEOUT)

        response = client.post('/review', json={
            'message_id': pending_id,
            'reviewer_id': 'reviewer_1',
            'verdict': 'unsafe',
            'feedback': 'Be kinder.',
        })

        assert response.status_code == 504
        assert services["workflow"].get_message(pending_id).flagged is True

    def test_unsafe_without_correction_or_feedback(self, client, pending_id):
        response = client.post('/review', json={
            'message_id': pending_id, 'reviewer_id': 'reviewer_1', 'verdict': 'unsafe',
        })

        assert response.status_code == 400

    def test_invalid_verdict(self, client, pending_id):
        response = client.post('/review', json={
            'message_id': pending_id, 'reviewer_id': 'reviewer_1', 'verdict': 'maybe',
        })

        assert response.status_code == 400

    def test_double_review_conflict(self, client, pending_id):
        body = {'message_id': pending_id, 'reviewer_id': 'reviewer_1', 'verdict': 'safe'}

        assert client.post('/review', json=body).status_code == 200
        assert client.post('/review', json=body).status_code == 409

    def test_unknown_message(self, client):
        response = client.post('/review', json={
            'message_id': 'msg_missing', 'reviewer_id': 'reviewer_1', 'verdict': 'safe',
        })

        assert response.status_code == 404

    def test_missing_fields(self, client):
        assert client.post('/review', json={'verdict': 'safe'}).status_code == 400


class TestMetricsEndpoint:
    """Tests for /metrics."""

    def test_metrics(self, client, services):
        send(client, "hello")
        flag_next_reply(services, "Whatever, you'll get over it.")
        send(client, "I feel awful")

        response = client.get('/metrics?days=7')
        data = json.loads(response.data)

        assert response.status_code == 200
        assert data['total_messages'] == 2
        assert data['flagged_count'] == 1
        assert data['flagged_percentage'] == 50.0
        assert len(data['daily']) == 7


class TestPipelineVerdicts:
    """Verdicts produced by the real pipeline with a mocked critic."""

    def test_critic_failure_is_medium_and_delivered(self, client, services):
        services["critic_llm"].generate.side_effect = RuntimeError("connection reset")

        data = json.loads(send(client, "hello there").data)

        assert data['risk_level'] == 'medium'
        assert data['status'] == 'delivered'

    def test_verdict_passed_to_workflow(self, client, services):
        verdict = RiskVerdict(risk_level=RiskLevel.LOW, risk_score=1)
        with patch(f"{HANDLER}.pipeline") as pipeline:
            pipeline.evaluate = AsyncMock(return_value=verdict)
            data = json.loads(send(client, "hello").data)

        assert data['risk_level'] == 'low'
        pipeline.evaluate.assert_awaited_once()

    def test_lone_surrogate_message_is_scored(self, client, services):
        response = client.post(
            '/chat/send',
            data='{"conversation_id": "conv_1", "message": "I had a rough day \\ud800"}',
            content_type='application/json',
        )

        assert response.status_code == 200
        assert json.loads(response.data)['risk_level'] == 'info'


def openai_compatible_app():
    """Minimal chat-completions server answering as responder or critic."""
    stub = Flask("openai_compatible")

    @stub.route("/v1/chat/completions", methods=["POST"])
    def chat_completions():
        messages = request.get_json()["messages"]
        is_critic = messages[0]["role"] == "system" and messages[0]["content"] == CRITIC_PROMPT
        return jsonify({
            "id": "chatcmpl-test",
            "object": "chat.completion",
            "created": 0,
            "model": "stub-model",
            "choices": [{
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": CRITIC_INFO if is_critic else SUPPORTIVE_REPLY,
                },
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": 10, "completion_tokens": 10, "total_tokens": 20},
        })

    return stub


@pytest.fixture
def openai_base_url():
    server = make_server("127.0.0.1", 0, openai_compatible_app(), threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}/v1"
    server.shutdown()
    thread.join()


class TestRealOpenAIClient:
    """Requests served through real AsyncOpenAI clients against a local server."""

    def test_consecutive_requests_share_client_connections(self, client, openai_base_url):
        config = LLMConfig(
            provider=LLMProvider.OPENAI,
            model_name="stub-model",
            api_key="sk-test",
            endpoint=openai_base_url,
        )
        pipeline = SafetyPipeline(PatternDetector(), CriticAdapter(OpenAILLM(config)))
        responder = Responder(OpenAILLM(config))

        with patch.multiple(HANDLER, pipeline=pipeline, responder=responder):
            responses = [send(client, "I had a rough day at work") for _ in range(3)]

        for response in responses:
            data = json.loads(response.data)
            assert response.status_code == 200, data
            assert data['risk_level'] == 'info'
            assert data['message']['content'] == SUPPORTIVE_REPLY
