"""Minimal demonstration of a streamed chat turn."""

import asyncio

from chat_core import get_default_service


async def main() -> None:
    service = get_default_service()
    question = "请介绍一下 Java 中的 ReentrantLock"
    reply = await service.ask(question)
    print("User:", question)
    print("Assistant:", reply.content if reply else "")
    conv = service.store.current_conversation()
    if conv is not None:
        print("Conversation:", conv.id, conv.title)


if __name__ == "__main__":
    asyncio.run(main())
