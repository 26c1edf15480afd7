"""Facebook agent."""

from typing import Any

from marionette.errors import ValidationError
from marionette_runner.agents.base import BaseAgent
from marionette_runner.executor import ExecutionResult

POST_LIMIT = 63206
COMMENT_LIMIT = 8000
REACTIONS = frozenset({"like", "love", "care", "haha", "wow", "sad", "angry"})


class FacebookAgent(BaseAgent):
    platform = "facebook"
    TEXT_LIMITS = {"text": POST_LIMIT, "comment": COMMENT_LIMIT}
    REQUIRED_PARAMS = {
        "post": ("text",),
        "like": ("post_url",),
        "react": ("post_url",),
        "comment": ("post_url", "comment"),
        "share": ("post_url",),
    }

    def validate_extra(self, workflow_type: str, params: dict[str, Any]) -> None:
        if workflow_type == "react":
            reaction = params.setdefault("reaction", "like")
            if reaction not in REACTIONS:
                raise ValidationError(
                    f"Unknown facebook reaction: {reaction}",
                    details={"allowed": sorted(REACTIONS)},
                )
        if params.get("page_url") and params.get("group_url"):
            raise ValidationError("A post targets either a page or a group, not both")

    async def post_timeline(self, text: str) -> ExecutionResult:
        return await self.run_workflow("post", {"text": text})

    async def post_page(self, page_url: str, text: str) -> ExecutionResult:
        return await self.run_workflow("post", {"page_url": page_url, "text": text})

    async def post_group(self, group_url: str, text: str) -> ExecutionResult:
        return await self.run_workflow("post", {"group_url": group_url, "text": text})

    async def react(self, post_url: str, reaction: str = "like") -> ExecutionResult:
        return await self.run_workflow("react", {"post_url": post_url, "reaction": reaction})

    async def comment(self, post_url: str, comment: str) -> ExecutionResult:
        return await self.run_workflow("comment", {"post_url": post_url, "comment": comment})
