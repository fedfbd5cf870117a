#!/usr/bin/env python3
"""Demonstration of two DavChat clients sharing an in-process store.

This script shows how to:
1. Register two users in the shared user directory
2. Sign in and open the conversation from both sides
3. Exchange a text message and a file attachment
4. Read the ordered history from the local caches

Usage:
    python examples/offline_chat_demo.py
"""

import asyncio

from davchat.client import ChatClient
from davchat.core.logging import configure_logging
from davchat.core.settings import Settings
from davchat.services.events import SyncListener
from davchat.services.remote_store import MemoryRemoteStore


class PrintingListener(SyncListener):
    def __init__(self, name: str) -> None:
        self.name = name

    def on_inbound_message(self, message) -> None:
        print(f"[{self.name}] new message from {message.sender_handle}: {message.content}")


DEMO_SETTINGS = Settings(
    _env_file=None,
    encryption_secret="demo secret shared by both clients",
    database_url="sqlite://",
    log_level="WARNING",
    error_log_path="davchat-demo-errors.log",
)


def make_client(store: MemoryRemoteStore) -> ChatClient:
    return ChatClient(DEMO_SETTINGS, store=store)


async def demonstrate_chat() -> None:
    """Run a short conversation between alice and bob."""
    print("DavChat offline demonstration")
    print("=" * 50)

    store = MemoryRemoteStore()
    async with make_client(store) as alice_client, make_client(store) as bob_client:
        await alice_client.register("alice")
        await bob_client.register("bob")
        await alice_client.sign_in("alice")
        await bob_client.sign_in("bob")
        alice_client.subscribe(PrintingListener("alice"))
        bob_client.subscribe(PrintingListener("bob"))

        bob = await alice_client.open_conversation("bob")
        alice = await bob_client.open_conversation("alice")

        await alice_client.sync.send_text(bob, "hi bob")
        await bob_client.sync.sync_now(alice)
        await bob_client.sync.send_file(alice, b"meeting notes\n", "notes.txt")
        await alice_client.sync.sync_now(bob)

        print()
        print("Conversation as stored by alice:")
        for message in await alice_client.sync.history(bob):
            print(f"  {message.sent_at} {message.sender_handle}: {message.kind} {message.content}")
            if message.kind == "file":
                data = await alice_client.sync.fetch_attachment(message)
                print(f"    attachment contents: {data!r}")


if __name__ == "__main__":
    configure_logging(DEMO_SETTINGS)
    asyncio.run(demonstrate_chat())
