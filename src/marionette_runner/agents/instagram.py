"""Instagram agent."""

from pathlib import Path
from typing import Any

from marionette.errors import ValidationError
from marionette_runner.agents.base import BaseAgent
from marionette_runner.executor import ExecutionResult

CAPTION_LIMIT = 2200
MAX_HASHTAGS = 30
IMAGE_SUFFIXES = frozenset({".jpg", ".jpeg", ".png"})


class InstagramAgent(BaseAgent):
    platform = "instagram"
    TEXT_LIMITS = {"caption": CAPTION_LIMIT, "text": CAPTION_LIMIT}
    REQUIRED_PARAMS = {
        "post": ("image_path",),
        "story": ("image_path",),
        "like": ("post_url",),
        "comment": ("post_url", "text"),
        "follow": ("handle",),
        "unfollow": ("handle",),
    }

    def validate_extra(self, workflow_type: str, params: dict[str, Any]) -> None:
        caption = params.get("caption")
        if isinstance(caption, str) and caption.count("#") > MAX_HASHTAGS:
            raise ValidationError(f"instagram caption exceeds {MAX_HASHTAGS} hashtags")

        image_path = params.get("image_path")
        if workflow_type in ("post", "story") and image_path:
            path = Path(str(image_path)).expanduser()
            if path.suffix.lower() not in IMAGE_SUFFIXES:
                raise ValidationError("instagram image must be a JPEG or PNG file")
            if not path.exists():
                raise ValidationError("instagram image file does not exist")

    async def post(self, image_path: str, caption: str = "") -> ExecutionResult:
        return await self.run_workflow("post", {"image_path": image_path, "caption": caption})

    async def story(self, image_path: str) -> ExecutionResult:
        return await self.run_workflow("story", {"image_path": image_path})

    async def like(self, post_url: str) -> ExecutionResult:
        return await self.run_workflow("like", {"post_url": post_url})

    async def comment(self, post_url: str, text: str) -> ExecutionResult:
        return await self.run_workflow("comment", {"post_url": post_url, "text": text})

    async def follow(self, handle: str) -> ExecutionResult:
        return await self.run_workflow("follow", {"handle": handle.lstrip("@")})

    async def unfollow(self, handle: str) -> ExecutionResult:
        return await self.run_workflow("unfollow", {"handle": handle.lstrip("@")})
