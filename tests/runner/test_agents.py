"""Tests for platform agents: validation happens before any browser opens."""

from __future__ import annotations

import random

import pytest

from marionette.errors import ValidationError
from marionette.workflows import ExecutionPlan, ResolvedStep
from marionette_runner.agents import (
    Credentials,
    FacebookAgent,
    InstagramAgent,
    TwitterAgent,
    get_agent_class,
)


def plan(platform: str, type: str, steps: list[tuple[str, dict]], auth: ExecutionPlan | None = None) -> ExecutionPlan:
    return ExecutionPlan(
        workflow_id=f"{platform}-{type}",
        name=f"{platform} {type}",
        platform=platform,
        type=type,
        steps=[
            ResolvedStep(index=i, micro_action_id=f"a{i}", name=f"s{i}", type=t, params=p)
            for i, (t, p) in enumerate(steps)
        ],
        auth_plan=auth,
    )


@pytest.fixture
def make_agent(runner_config, opener, no_sleep):
    def _make(agent_cls, *plans: ExecutionPlan, credentials: Credentials | None = None):
        agent = agent_cls(
            runner_config,
            open_session=opener,
            credentials=credentials,
            rng=random.Random(0),
            sleep=no_sleep,
        )
        for p in plans:
            agent.register_plan(p)
        return agent

    return _make


TWEET_PLAN = plan(
    "twitter",
    "post",
    [
        ("navigate", {"url": "https://x.com/compose/post"}),
        ("type", {"selector": "[data-testid=tweetTextarea_0]", "text": "{{text}}"}),
        ("click", {"selector": "[data-testid=tweetButton]"}),
    ],
)


class TestRegistry:
    def test_lookup(self) -> None:
        assert get_agent_class("twitter") is TwitterAgent
        assert get_agent_class("instagram") is InstagramAgent

    def test_unknown_platform(self) -> None:
        with pytest.raises(ValidationError):
            get_agent_class("myspace")

    def test_platform_mismatch(self, make_agent) -> None:
        with pytest.raises(ValidationError):
            make_agent(FacebookAgent, TWEET_PLAN)

    def test_credentials_repr_hides_password(self) -> None:
        assert "hunter2" not in repr(Credentials(username="bot", password="hunter2"))


class TestTwitterAgent:
    async def test_tweet(self, make_agent, fake_page, opener) -> None:
        agent = make_agent(TwitterAgent, TWEET_PLAN)

        result = await agent.tweet("hello world")

        assert result.steps_completed == 3
        assert fake_page.typed == "hello world"
        assert opener.call_count == 1

    async def test_overlong_tweet_never_opens_browser(self, make_agent, opener) -> None:
        agent = make_agent(TwitterAgent, TWEET_PLAN)

        with pytest.raises(ValidationError) as exc_info:
            await agent.tweet("x" * 281)

        assert exc_info.value.details["limit"] == 280
        assert opener.call_count == 0

    async def test_exactly_280_is_fine(self, make_agent) -> None:
        agent = make_agent(TwitterAgent, TWEET_PLAN)
        result = await agent.tweet("x" * 280)
        assert result.steps_completed == 3

    async def test_unregistered_workflow(self, make_agent, opener) -> None:
        agent = make_agent(TwitterAgent)
        with pytest.raises(ValidationError):
            await agent.like("https://x.com/a/status/1")
        assert opener.call_count == 0

    async def test_auth_prelude_needs_credentials(self, make_agent, fake_page, opener) -> None:
        auth = plan(
            "twitter",
            "auth",
            [
                ("navigate", {"url": "https://x.com/login"}),
                ("type", {"selector": "#user", "text": "{{username}}"}),
                ("type", {"selector": "#pass", "text": "{{password}}"}),
            ],
        )
        like = plan(
            "twitter", "like", [("click", {"selector": "[data-testid=like]"})], auth=auth
        )

        anonymous = make_agent(TwitterAgent, like)
        with pytest.raises(ValidationError):
            await anonymous.like("https://x.com/a/status/1")
        assert opener.call_count == 0

        agent = make_agent(TwitterAgent, like, credentials=Credentials("bot", "pw"))
        result = await agent.like("https://x.com/a/status/1")

        assert result.steps_completed == 4
        assert fake_page.visited == ["https://x.com/login"]
        assert fake_page.typed == "botpw"


class TestFacebookAgent:
    def test_reaction_defaults_to_like(self, make_agent) -> None:
        agent = make_agent(FacebookAgent)
        params = {"post_url": "https://facebook.com/p/1"}
        agent.validate("react", params)
        assert params["reaction"] == "like"

    def test_unknown_reaction(self, make_agent) -> None:
        agent = make_agent(FacebookAgent)
        with pytest.raises(ValidationError):
            agent.validate("react", {"post_url": "https://facebook.com/p/1", "reaction": "meh"})

    def test_page_and_group_exclusive(self, make_agent) -> None:
        agent = make_agent(FacebookAgent)
        with pytest.raises(ValidationError):
            agent.validate("post", {"text": "hi", "page_url": "p", "group_url": "g"})

    def test_comment_limit(self, make_agent) -> None:
        agent = make_agent(FacebookAgent)
        with pytest.raises(ValidationError):
            agent.validate("comment", {"post_url": "u", "comment": "x" * 8001})


class TestInstagramAgent:
    def test_image_required(self, make_agent) -> None:
        agent = make_agent(InstagramAgent)
        with pytest.raises(ValidationError):
            agent.validate("post", {"caption": "hi"})

    def test_image_type(self, make_agent, tmp_path) -> None:
        gif = tmp_path / "cat.gif"
        gif.write_bytes(b"GIF89a")
        agent = make_agent(InstagramAgent)
        with pytest.raises(ValidationError):
            agent.validate("post", {"image_path": str(gif)})

    def test_hashtag_limit(self, make_agent, tmp_path) -> None:
        image = tmp_path / "cat.jpg"
        image.write_bytes(b"\xff\xd8")
        agent = make_agent(InstagramAgent)

        agent.validate("post", {"image_path": str(image), "caption": "#a" * 30})
        with pytest.raises(ValidationError):
            agent.validate("post", {"image_path": str(image), "caption": "#a" * 31})

    def test_caption_limit(self, make_agent, tmp_path) -> None:
        image = tmp_path / "cat.png"
        image.write_bytes(b"\x89PNG")
        agent = make_agent(InstagramAgent)
        with pytest.raises(ValidationError):
            agent.validate("post", {"image_path": str(image), "caption": "x" * 2201})
