"""Twitter agent."""

from marionette_runner.agents.base import BaseAgent
from marionette_runner.executor import ExecutionResult

TWEET_LIMIT = 280


class TwitterAgent(BaseAgent):
    platform = "twitter"
    TEXT_LIMITS = {"text": TWEET_LIMIT}
    REQUIRED_PARAMS = {
        "post": ("text",),
        "like": ("tweet_url",),
        "share": ("tweet_url",),
        "comment": ("tweet_url", "text"),
        "follow": ("handle",),
        "unfollow": ("handle",),
    }

    async def tweet(self, text: str) -> ExecutionResult:
        return await self.run_workflow("post", {"text": text})

    async def retweet(self, tweet_url: str) -> ExecutionResult:
        return await self.run_workflow("share", {"tweet_url": tweet_url})

    async def like(self, tweet_url: str) -> ExecutionResult:
        return await self.run_workflow("like", {"tweet_url": tweet_url})

    async def reply(self, tweet_url: str, text: str) -> ExecutionResult:
        return await self.run_workflow("comment", {"tweet_url": tweet_url, "text": text})

    async def follow(self, handle: str) -> ExecutionResult:
        return await self.run_workflow("follow", {"handle": handle.lstrip("@")})
