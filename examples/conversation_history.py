"""
Conversation history — fetch recent messages from a DM or channel with
user names resolved.

Run:
    export SLACK_TOKEN=xoxc-...  SLACK_COOKIE=xoxd-...
    python examples/conversation_history.py D063M4403MW
"""

import asyncio
import sys

from slackmirror import MirrorConfig, SlackClient, TokenStore
from slackmirror.client import format_timestamp


async def main(channel_id: str) -> None:
    config = MirrorConfig.from_env()
    store = TokenStore.from_config(config)

    async with SlackClient.from_config(config, store) as slack:
        result = await slack.call("conversations.history", {"channel": channel_id, "limit": 20})
        if not result.ok:
            assert result.error is not None
            print(f"Error [{result.error.kind.value}]: {result.error.message}")
            print(f"Hint: {result.error.hint}")
            return

        for msg in reversed(result.data.get("messages", [])):
            name = await slack.resolve_user(msg.get("user"))
            print(f"{format_timestamp(msg['ts'])}  {name}: {msg.get('text', '')}")

        print(f"\nuser cache: {slack.cache_stats()}")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: conversation_history.py <channel_id>")
        sys.exit(1)
    asyncio.run(main(sys.argv[1]))
