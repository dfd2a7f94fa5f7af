#!/usr/bin/env python3
"""Quick demo of the router and its components — no API key needed."""

import asyncio
import os
import tempfile

from omnirouter.channels.console import ConsoleAdapter
from omnirouter.channels.webchat import WebChatAdapter
from omnirouter.errors import NotFoundError
from omnirouter.reply.persona import build_system_prompt, load_persona
from omnirouter.router import Router
from omnirouter.session.store import ConversationStore

tmp = tempfile.mkdtemp()


class EchoReplyService:
    """Stands in for the Portkey service; remembers each conversation."""

    def __init__(self, store):
        self.store = store

    async def chat(self, request):
        chat_id = request["chat_id"]
        turns = len(self.store.load(chat_id)) // 2 + 1
        reply = f"(turn {turns}) you said: {request['message']}"
        self.store.append(
            chat_id,
            {"role": "user", "content": request["message"]},
            {"role": "assistant", "content": reply},
        )
        return {"response": {"chat": {"reply": reply}}}


async def main():
    store = ConversationStore(os.path.join(tmp, "history"))
    lines = iter(["hello", "/ping", "hello again", "/quit"])

    console = ConsoleAdapter(input_fn=lambda prompt: next(lines), output_fn=lambda text: print(f"  {text.strip()}"))
    webchat = WebChatAdapter(host="127.0.0.1", port=0, bot_id="web-bot")

    router = Router(
        reply_service=EchoReplyService(store),
        project_id="demo",
        default_bot_id="helpdesk",
        adapters=[console, webchat],
    )

    async def handle(message, context):
        if message.content == "/ping":
            return "Pong!"
        return await context["adapter"].default_reply(message)

    router.on_message(handle)

    print("=== Router ===")
    await router.start()
    for status in router.get_status()["adapters"]:
        print(f"  {status['channel']}: started={status['is_started']} bot={status['bot_id']}")
    print()

    print("=== Console conversation ===")
    await console.closed.wait()
    print(f"  Stored conversations: {store.conversations()}")
    print()

    print("=== Outbound ===")
    await router.send_message("console", "local", "Your ticket was updated")
    results = await router.broadcast("Maintenance tonight at 22:00")
    print(f"  Broadcast: {[r.to_dict() for r in results]}")
    try:
        await router.send_message("fax", "someone", "hello")
    except NotFoundError as e:
        print(f"  {e}")
    print()

    print("=== Persona ===")
    prompt = build_system_prompt(load_persona(os.path.join(tmp, "personas"), "helpdesk"), channel="console")
    print(f"  System prompt: {len(prompt)} chars")
    print(f"  First line: {prompt.splitlines()[0]}")
    print()

    await router.stop()
    print("All components working!")


if __name__ == "__main__":
    asyncio.run(main())
