"""Platform agents."""

from marionette.errors import ValidationError
from marionette_runner.agents.base import BaseAgent, Credentials
from marionette_runner.agents.facebook import FacebookAgent
from marionette_runner.agents.instagram import InstagramAgent
from marionette_runner.agents.twitter import TwitterAgent

AGENTS: dict[str, type[BaseAgent]] = {
    TwitterAgent.platform: TwitterAgent,
    FacebookAgent.platform: FacebookAgent,
    InstagramAgent.platform: InstagramAgent,
}


def get_agent_class(platform: str) -> type[BaseAgent]:
    try:
        return AGENTS[platform]
    except KeyError:
        raise ValidationError(f"Unsupported platform: {platform}") from None


__all__ = [
    "AGENTS",
    "BaseAgent",
    "Credentials",
    "FacebookAgent",
    "InstagramAgent",
    "TwitterAgent",
    "get_agent_class",
]
