"""Tests for 1:1 chat orchestration."""

import pytest

from store.conversations import InMemoryConversationStore


class RecordingListener:
    def __init__(self):
        self.created = []
        self.updated = []

    def on_conversation_created(self, conversation):
        self.created.append(conversation)

    def on_conversation_updated(self, conversation):
        self.updated.append(conversation)


@pytest.fixture
def conversations():
    return InMemoryConversationStore()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def chat(resolver, responder, directory, conversations, listener):
    from orchestrator.chat import ChatOrchestrator
    from orchestrator.persistence import TranscriptSaver

    return ChatOrchestrator(
        resolver=resolver,
        responder=responder,
        directory=directory,
        saver=TranscriptSaver(conversations, max_attempts=3, retry_delay=0),
        listener=listener,
    )


class TestChatOrchestrator:
    """Tests for ChatOrchestrator."""

    @pytest.mark.asyncio
    async def test_mention_skips_dispatch(self, chat, fake_client, conversations, listener):
        """@旅行管家 东京三天行程 goes straight to the named agent."""
        from orchestrator.chat import ChatSession

        fake_client.agent_replies["key-travel"] = ["第一天：", "浅草寺"]
        session = ChatSession()

        result = await chat.send(session, "@旅行管家 东京三天行程")

        assert fake_client.complete_calls == []
        assert fake_client.streamed_keys() == ["key-travel"]
        assert fake_client.stream_calls[0]["messages"][-1].content == "东京三天行程"

        user, reply = result.messages
        assert user.is_user and user.content == "东京三天行程"
        assert reply.agent_name == "旅行管家"
        assert reply.content == "第一天：浅草寺"
        assert reply.is_thinking is False

        assert result.persisted
        stored = await conversations.get(result.conversation_id)
        assert stored.title == "东京三天行程"
        assert [m.content for m in stored.messages] == ["东京三天行程", "第一天：浅草寺"]
        assert len(listener.created) == 1

    @pytest.mark.asyncio
    async def test_unknown_mention(self, chat, fake_client, conversations, listener):
        """An unknown mention yields one system error and no calls."""
        from orchestrator.chat import ChatSession

        session = ChatSession()

        result = await chat.send(session, "@不存在的人 你好")

        assert result.aborted
        assert result.agent_calls == 0
        assert fake_client.complete_calls == []
        assert fake_client.stream_calls == []
        assert len(result.messages) == 1
        notice = result.messages[0]
        assert notice.agent_name == "系统"
        assert "不存在的人" in notice.content
        assert "旅行管家" in notice.content
        assert await conversations.list_summaries() == []
        assert listener.created == []

    @pytest.mark.asyncio
    async def test_empty_dispatch_uses_default(self, chat, fake_client):
        """A "[]" dispatch reply routes to exactly the default agent."""
        from orchestrator.chat import ChatSession

        fake_client.dispatch_replies = ["[]"]
        fake_client.agent_replies["key-default"] = ["你好！"]

        result = await chat.send(ChatSession(), "随便聊聊")

        assert fake_client.streamed_keys() == ["key-default"]
        assert result.agent_calls == 1
        assert [m.agent_name for m in result.messages] == ["用户", "默认智能体"]

    @pytest.mark.asyncio
    async def test_candidates_share_original_history(self, chat, fake_client, dispatch_reply):
        """Later candidates do not see earlier candidates' replies."""
        from orchestrator.chat import ChatSession

        fake_client.dispatch_replies = [dispatch_reply(("travel", "旅行管家"), ("food", "美食家"))]
        fake_client.agent_replies["key-travel"] = ["去京都"]
        fake_client.agent_replies["key-food"] = ["吃寿司"]

        result = await chat.send(ChatSession(), "周末安排")

        assert fake_client.streamed_keys() == ["key-travel", "key-food"]
        first, second = fake_client.stream_calls
        assert [m.content for m in first["messages"]] == ["周末安排"]
        assert [m.content for m in second["messages"]] == ["周末安排"]
        assert [m.content for m in result.messages] == ["周末安排", "去京都", "吃寿司"]

    @pytest.mark.asyncio
    async def test_dispatch_placeholder_removed(self, chat, fake_client, dispatch_reply):
        """The dispatch center placeholder disappears once dispatch succeeds."""
        from orchestrator.chat import ChatSession

        fake_client.dispatch_replies = [dispatch_reply(("food", "美食家"))]

        result = await chat.send(ChatSession(), "吃什么")

        assert all(m.agent_name != "调度中心" for m in result.messages)

    @pytest.mark.asyncio
    async def test_dispatch_failure_inline(self, chat, fake_client, conversations):
        """A failed dispatch is shown inline and the transcript is still saved."""
        from fastgpt_client.errors import FastGPTAuthError
        from orchestrator.chat import ChatSession

        fake_client.dispatch_replies = [FastGPTAuthError(401)]

        result = await chat.send(ChatSession(), "你好")

        assert result.dispatch_error
        assert result.agent_calls == 0
        notice = result.messages[-1]
        assert notice.agent_name == "调度中心"
        assert notice.content.startswith("调度失败")
        assert notice.is_thinking is False
        assert result.persisted

    @pytest.mark.asyncio
    async def test_rate_limited_agent(self, chat, fake_client, dispatch_reply):
        """A 429 from one agent shows the rate-limit text; siblings answer."""
        from fastgpt_client.errors import FastGPTRateLimitError
        from orchestrator.chat import ChatSession

        fake_client.dispatch_replies = [dispatch_reply(("travel", "旅行管家"), ("food", "美食家"))]
        fake_client.agent_replies["key-travel"] = FastGPTRateLimitError(429)
        fake_client.agent_replies["key-food"] = ["没问题"]

        result = await chat.send(ChatSession(), "推荐一下")

        contents = {m.agent_name: m.content for m in result.messages if not m.is_user}
        assert contents == {"旅行管家": "[请求过于频繁，请稍后再试]", "美食家": "没问题"}
        assert result.persisted
        assert [r.ok for r in result.replies] == [False, True]

    @pytest.mark.asyncio
    async def test_second_turn_updates(self, chat, fake_client, conversations, listener):
        """Later turns update the same conversation and send prefixed history."""
        from orchestrator.chat import ChatSession

        fake_client.agent_replies["key-travel"] = ["好的"]
        session = ChatSession()

        await chat.send(session, "@旅行管家 去哪")
        await chat.send(session, "@旅行管家 再说说")

        stored = await conversations.get(session.conversation_id)
        assert len(stored.messages) == 4
        assert stored.version == 1
        assert len(listener.created) == 1
        assert len(listener.updated) == 1

        history = fake_client.stream_calls[1]["messages"]
        assert [(m.role, m.content) for m in history] == [
            ("user", "去哪"),
            ("assistant", "旅行管家：好的"),
            ("user", "再说说"),
        ]

    @pytest.mark.asyncio
    async def test_conflict_resolved_last_writer_wins(self, chat, fake_client, conversations):
        """A stale version is retried against the latest stored version."""
        from orchestrator.chat import ChatSession

        session = ChatSession()
        await chat.send(session, "@美食家 第一句")

        # Another writer saves in between
        stored = await conversations.get(session.conversation_id)
        await conversations.save(stored.id, stored.messages[:1], stored.version)

        result = await chat.send(session, "@美食家 第二句")

        assert result.persisted
        assert result.save_error is None
        stored = await conversations.get(session.conversation_id)
        assert len(stored.messages) == 4
        assert session.version == stored.version

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, chat):
        from orchestrator.chat import ChatSession

        with pytest.raises(ValueError):
            await chat.send(ChatSession(), "   ")

    @pytest.mark.asyncio
    async def test_cancelled_turn_not_persisted(self, chat, fake_client, conversations):
        """A cancelled turn makes no calls and saves nothing."""
        from orchestrator.cancellation import CancellationToken
        from orchestrator.chat import ChatSession

        token = CancellationToken()
        token.cancel()

        result = await chat.send(ChatSession(), "@美食家 你好", token=token)

        assert result.cancelled
        assert fake_client.stream_calls == []
        assert await conversations.list_summaries() == []

    def test_make_title_truncates(self):
        from orchestrator.chat import make_title
        from shared.models import Message

        messages = [Message(agent_name="用户", content="一二三四五六七八九十一二三四五六七八九十多余", is_user=True)]

        assert make_title(messages) == "一二三四五六七八九十一二三四五六七八九十"


class TestGatewayBodyErrors:
    """Turns against a gateway that answers with a non-JSON body."""

    @pytest.mark.asyncio
    async def test_html_dispatch_reply_shown_inline(
        self, directory, fastgpt_settings, store_settings, conversations
    ):
        """The turn still ends with an inline dispatch failure after retries."""
        import httpx

        from fastgpt_client.client import FastGPTClient
        from orchestrator.chat import ChatOrchestrator, ChatSession
        from orchestrator.dispatch import DispatchResolver
        from orchestrator.persistence import TranscriptSaver
        from orchestrator.responder import AgentResponder

        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, text="<html>gateway</html>")

        client = FastGPTClient(base_url="https://fastgpt.test", transport=httpx.MockTransport(handler))
        chat = ChatOrchestrator(
            resolver=DispatchResolver(client, directory, fastgpt_settings, store_settings),
            responder=AgentResponder(client, directory),
            directory=directory,
            saver=TranscriptSaver(conversations, max_attempts=3, retry_delay=0),
        )

        result = await chat.send(ChatSession(), "你好")

        assert len(calls) == fastgpt_settings.dispatch_max_attempts
        assert result.dispatch_error
        assert result.agent_calls == 0
        assert result.messages[-1].content.startswith("调度失败")
        assert result.messages[-1].is_thinking is False
        await client.close()
