"""Minimal demonstration of an anonymous PromptCraft chat session."""

import asyncio

from promptcraft.api import service


async def main() -> None:
    question = "How do I write a prompt that gets consistent product descriptions?"
    result = await service.submit_message(question)
    print("User:", question)
    if result["status"] == "settled":
        print("PromptCraft:", result["reply"]["text"])
    else:
        print("Failed:", result["error_kind"], result["cause"])
    await service.reset_default_session()


if __name__ == "__main__":
    asyncio.run(main())
