"""Tests for group chat orchestration and discussions."""

import asyncio

import pytest


@pytest.fixture
def groups(resolver, responder, directory, repository):
    from orchestrator.groupchat import GroupChatOrchestrator

    return GroupChatOrchestrator(
        resolver=resolver,
        responder=responder,
        directory=directory,
        repository=repository,
        discussion_rounds=3,
        round_delay=0,
    )


class TestResolveGroupAgents:
    """Tests for agent reference normalization."""

    @pytest.mark.asyncio
    async def test_unknown_ids_become_placeholders(self, group, directory):
        from orchestrator.groupchat import resolve_group_agents

        agents = await resolve_group_agents(group, directory)

        assert [a.name for a in agents] == ["旅行管家", "美食家", "未知智能体"]
        assert agents[2].id == "ghost"
        assert agents[2].status.value == "offline"

    @pytest.mark.asyncio
    async def test_populated_refs_kept(self, directory):
        from orchestrator.groupchat import resolve_group_agents
        from shared.models import Agent, GroupChat

        group = GroupChat(id="g2", name="x", agent_ids=[{"_id": "a1", "name": "外部", "apiKey": "k"}])

        agents = await resolve_group_agents(group, directory)

        assert isinstance(agents[0], Agent)
        assert agents[0].api_key == "k"


class TestGroupChatOrchestrator:
    """Tests for non-discussion group turns."""

    @pytest.mark.asyncio
    async def test_concurrent_replies_persisted(
        self, groups, group, fake_client, repository, dispatch_reply
    ):
        """All candidates answer concurrently; every reply is persisted once."""
        fake_client.dispatch_replies = [dispatch_reply(("travel", "旅行管家"), ("food", "美食家"))]
        fake_client.agent_replies["key-travel"] = ["去", "北海道"]
        fake_client.agent_replies["key-food"] = ["吃", "蟹"]

        turn = await groups.send(group, "冬天去哪")

        assert [p.agent_name for p in turn.placeholders] == ["旅行管家", "美食家"]
        assert all(p.is_thinking for p in turn.placeholders)

        replies = await turn.wait()

        assert all(r.ok for r in replies)
        stored = await repository.list_messages(group.id)
        contents = sorted(m.content for m in stored if not m.is_user)
        assert contents == sorted(["去北海道", "吃蟹"])
        assert [m.content for m in stored if m.is_user] == ["冬天去哪"]
        assert fake_client.complete_calls[0]["groupId"] == group.id

    @pytest.mark.asyncio
    async def test_sibling_failure_isolated(self, groups, group, fake_client, dispatch_reply):
        """One agent's 500 does not affect the other."""
        from fastgpt_client.errors import FastGPTServerError

        fake_client.dispatch_replies = [dispatch_reply(("travel", "旅行管家"), ("food", "美食家"))]
        fake_client.agent_replies["key-travel"] = FastGPTServerError(500)
        fake_client.agent_replies["key-food"] = ["照常"]

        turn = await groups.send(group, "测试")
        await turn.wait()

        board = await groups.board(group.id)
        contents = {m.agent_name: m.content for m in board.messages if not m.is_user}
        assert contents == {"旅行管家": "[服务器内部错误，请稍后再试]", "美食家": "照常"}

    @pytest.mark.asyncio
    async def test_unknown_mention_in_group(self, groups, group, fake_client, repository):
        """Mentions are restricted to the group's agents."""
        turn = await groups.send(group, "@默认智能体 你好")

        assert turn.aborted
        assert turn.tasks == []
        assert fake_client.complete_calls == []
        assert await repository.list_messages(group.id) == []

        board = await groups.board(group.id)
        assert board.messages[-1].agent_name == "系统"

    @pytest.mark.asyncio
    async def test_mention_in_group(self, groups, group, fake_client):
        fake_client.agent_replies["key-food"] = ["推荐拉面"]

        turn = await groups.send(group, "@美食家 晚饭")
        await turn.wait()

        assert fake_client.complete_calls == []
        assert fake_client.streamed_keys() == ["key-food"]

    @pytest.mark.asyncio
    async def test_cancel_group_turn(self, groups, group, fake_client, repository, dispatch_reply):
        """Cancelling stops every stream and persists no agent reply."""
        fake_client.dispatch_replies = [dispatch_reply(("travel", "旅行管家"), ("food", "美食家"))]
        gate = asyncio.Event()
        fake_client.gates["key-travel"] = gate
        fake_client.gates["key-food"] = gate

        turn = await groups.send(group, "慢慢说")
        await asyncio.sleep(0)
        turn.cancel()
        gate.set()
        replies = await turn.wait()

        assert replies == []
        stored = await repository.list_messages(group.id)
        assert [m.content for m in stored] == ["慢慢说"]

    @pytest.mark.asyncio
    async def test_dispatch_failure(self, groups, group, fake_client, repository):
        from fastgpt_client.errors import FastGPTRateLimitError

        fake_client.dispatch_replies = [FastGPTRateLimitError(429)]

        turn = await groups.send(group, "你好")

        assert turn.dispatch_error
        assert turn.tasks == []
        stored = await repository.list_messages(group.id)
        assert stored[-1].agent_name == "调度中心"

    @pytest.mark.asyncio
    async def test_boards_evicted_least_recently_used(self, resolver, responder, directory):
        """Only the most recently used boards stay in memory."""
        from orchestrator.groupchat import GroupChatOrchestrator
        from shared.models import GroupChat, Message
        from store.groupchats import InMemoryGroupChatRepository

        repository = InMemoryGroupChatRepository(
            [GroupChat(id=f"g{i}", name=f"群{i}", agent_ids=["food"]) for i in range(3)]
        )
        groups = GroupChatOrchestrator(
            resolver, responder, directory, repository, round_delay=0, board_cache_size=2
        )

        first = await groups.board("g0")
        first.append(Message(agent_name="美食家", content="未保存"))
        await groups.board("g1")
        await groups.board("g0")
        await groups.board("g2")

        assert await groups.board("g0") is first
        assert len(groups._boards) == 2
        assert "g1" not in groups._boards

    @pytest.mark.asyncio
    async def test_finished_discussion_dropped(self, groups, group, fake_client):
        session = await groups.start_discussion(group, "话题", rounds=1)

        assert groups.discussion(group.id) is session
        await session.wait()

        assert session.completed
        assert groups.discussion(group.id) is None

    @pytest.mark.asyncio
    async def test_group_without_agents(self, groups):
        from shared.models import GroupChat

        with pytest.raises(ValueError):
            await groups.send(GroupChat(id="empty", name="空"), "你好")


class TestGroupMessageAppend:
    """Tests for idempotent group message persistence."""

    @pytest.mark.asyncio
    async def test_append_twice(self, repository, group):
        from shared.models import Message

        message = Message(agent_name="美食家", content="拉面")

        first = await repository.append(group.id, message)
        second = await repository.append(group.id, message)

        assert first.already_exists is False
        assert second.already_exists is True
        assert len(await repository.list_messages(group.id)) == 1


class TestDiscussionSession:
    """Tests for discussion mode."""

    @pytest.mark.asyncio
    async def test_runs_all_rounds(self, groups, group, fake_client, repository, dispatch_reply):
        """N rounds make exactly N dispatch calls and complete."""
        fake_client.dispatch_replies = [
            dispatch_reply(("travel", "旅行管家")),
            dispatch_reply(("food", "美食家")),
            dispatch_reply(("travel", "旅行管家")),
        ]
        fake_client.agent_replies["key-travel"] = ["去海边"]
        fake_client.agent_replies["key-food"] = ["吃海鲜"]

        session = await groups.start_discussion(group, "夏天计划")
        await session.wait()

        assert session.completed
        assert session.completed_rounds == [1, 2, 3]
        assert len(fake_client.complete_calls) == 3
        assert all(call["discuss"] is True for call in fake_client.complete_calls)

        # Each round sees the rolling discussion joined into one user message
        prompts = [call["messages"] for call in fake_client.stream_calls]
        assert [len(p) for p in prompts] == [1, 1, 1]
        assert prompts[1][0].content == "夏天计划\n\n旅行管家：去海边"

        # Dispatch sees the rolling history with name prefixes
        last_dispatch = fake_client.complete_calls[2]["messages"]
        assert [m.content for m in last_dispatch] == ["夏天计划", "旅行管家：去海边", "美食家：吃海鲜"]

        stored = await repository.list_messages(group.id)
        assert [m.content for m in stored if m.agent_name in ("旅行管家", "美食家")] == [
            "去海边", "吃海鲜", "去海边"
        ]
        notices = [m.content for m in stored if m.agent_name == "调度中心"]
        assert "第2轮讨论：选择智能体 美食家 参与讨论" in notices
        assert notices[-1] == "讨论已完成，共进行了3轮"

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, groups, group, fake_client, dispatch_reply):
        """Pausing during round 1 stops after it; resume continues at round 2."""
        fake_client.dispatch_replies = [dispatch_reply(("food", "美食家"))]
        gate = asyncio.Event()
        fake_client.gates["key-food"] = gate

        session = await groups.start_discussion(group, "聊聊美食")
        await asyncio.sleep(0.01)

        assert session.pause()
        gate.set()
        await session.wait()

        assert session.status.value == "paused"
        assert session.completed_rounds == [1]
        assert session.next_round == 2
        assert len(fake_client.complete_calls) == 1

        await session.resume()
        await session.wait()

        assert session.completed
        assert session.completed_rounds == [1, 2, 3]
        assert len(fake_client.complete_calls) == 3

    @pytest.mark.asyncio
    async def test_resume_before_round_ends_withdraws_pause(
        self, groups, group, fake_client, repository, dispatch_reply
    ):
        """Resuming while the paused round is still running keeps the loop going."""
        fake_client.dispatch_replies = [dispatch_reply(("food", "美食家"))]
        gate = asyncio.Event()
        fake_client.gates["key-food"] = gate

        session = await groups.start_discussion(group, "聊聊美食")
        await asyncio.sleep(0.01)

        assert session.pause()
        task = await session.resume()
        assert task is not None
        assert session.status.value == "running"

        gate.set()
        await session.wait()

        assert session.completed
        assert session.completed_rounds == [1, 2, 3]
        stored = await repository.list_messages(group.id)
        assert not any("暂停" in m.content for m in stored if m.agent_name == "调度中心")

    @pytest.mark.asyncio
    async def test_resume_requires_pause(self, groups, group, fake_client):
        session = await groups.start_discussion(group, "话题", rounds=1)
        await session.wait()

        assert session.completed
        assert await session.resume() is None

    @pytest.mark.asyncio
    async def test_abort_keeps_persisted_rounds(
        self, groups, group, fake_client, repository, dispatch_reply
    ):
        """Aborting mid-round cancels the call; earlier rounds stay stored."""
        fake_client.dispatch_replies = [
            dispatch_reply(("travel", "旅行管家")),
            dispatch_reply(("food", "美食家")),
        ]
        fake_client.agent_replies["key-travel"] = ["第一轮"]
        gate = asyncio.Event()
        fake_client.gates["key-food"] = gate

        session = await groups.start_discussion(group, "辩论")
        for _ in range(20):
            if len(fake_client.stream_calls) == 2:
                break
            await asyncio.sleep(0.01)

        await session.abort()
        gate.set()
        await session.wait()

        assert session.status.value == "aborted"
        assert session.completed_rounds == [1]
        stored = await repository.list_messages(group.id)
        assert [m.content for m in stored if m.agent_name == "旅行管家"] == ["第一轮"]
        assert all(m.agent_name != "美食家" for m in stored)
        assert stored[-1].content == "讨论已终止"
        assert groups.discussion(group.id) is None

    @pytest.mark.asyncio
    async def test_failed_round_skipped(self, groups, group, fake_client, dispatch_reply):
        """A round whose dispatch fails is logged and the next round runs."""
        from fastgpt_client.errors import FastGPTAuthError

        fake_client.dispatch_replies = [
            FastGPTAuthError(401),
            dispatch_reply(("food", "美食家")),
        ]

        session = await groups.start_discussion(group, "话题", rounds=2)
        await session.wait()

        assert session.completed
        assert session.completed_rounds == [2]
        board = await groups.board(group.id)
        assert any(m.content.startswith("第1轮讨论失败") for m in board.messages)

    @pytest.mark.asyncio
    async def test_missing_dispatch_key_stops(
        self, fake_client, directory, repository, responder, group, store_settings
    ):
        """Without a dispatch credential the discussion fails at round 1."""
        from orchestrator.dispatch import DispatchResolver
        from orchestrator.groupchat import GroupChatOrchestrator
        from shared.config import FastGPTSettings

        resolver = DispatchResolver(
            fake_client,
            directory,
            FastGPTSettings(dispatch_api_key=None, discussion_dispatch_api_key=None),
            store_settings
        )
        groups = GroupChatOrchestrator(resolver, responder, directory, repository, round_delay=0)

        session = await groups.start_discussion(group, "话题")
        await session.wait()

        assert session.status.value == "failed"
        assert fake_client.complete_calls == []
