#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- Identity registration, login and unlock
- Conversation keys derived with ECDH
- Encrypted messaging synchronized by polling the relay
"""

import asyncio
import getpass
import logging
import sys

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2ee.errors import CryptoError, NoKeyMaterialError, WrongPasswordError

from .client import ChatClient
from .config import ClientConfig
from .timeline import Message
from .transport import AuthenticationError, ConflictError, TransportError

HELP_TEXT = """Commands:
  /chat <username>  - Open conversation with user
  /exit             - Leave current conversation
  /search <query>   - Find users
  /conversations    - List recent conversations
  /history          - Show current conversation
  /quit             - Quit application"""


def format_message(message: Message, me: str) -> str:
    timestamp = message.created_at.astimezone().strftime("%H:%M")
    prefix = "You" if message.sender_username == me else message.sender_username
    status = ""
    if message.pending:
        status = " (sending)"
    elif message.send_failed:
        status = " (not sent)"
    return f"[{timestamp}] {prefix}: {message.text}{status}"


class ChatShell:
    """Interactive shell around ChatClient"""

    def __init__(self, client: ChatClient):
        self.client = client
        self.running = False
        self.current_chat = None

    def on_message(self, peer: str, message: Message):
        # Own sends are echoed by the prompt already.
        if peer == self.current_chat and message.sender_username != self.client.username:
            print(format_message(message, self.client.username))

    async def start_chat(self, peer: str):
        self.current_chat = peer
        await self.client.open_conversation(peer)
        await self.client.sync.poll_once()
        self.show_history()
        print(f"Chatting with {peer}. Type '/exit' to leave chat, '/help' for commands.")

    def show_history(self):
        messages = self.client.get_timeline(self.current_chat) if self.current_chat else []
        if messages:
            print("\n--- Message History ---")
            for message in messages[-20:]:
                print(format_message(message, self.client.username))
            print("--- End History ---\n")

    async def send(self, text: str):
        try:
            await self.client.send_message(self.current_chat, text)
        except NoKeyMaterialError:
            print(f"[{self.current_chat} has not published a key yet; message not sent]")
        except CryptoError as e:
            print(f"[Cannot encrypt for {self.current_chat}: {e}]")
        except TransportError as e:
            print(f"[Message not delivered: {e}]")

    async def handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()

        if cmd == "/chat" and len(parts) == 2:
            await self.start_chat(parts[1].strip())
        elif cmd == "/exit":
            self.client.close_conversation()
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/search" and len(parts) == 2:
            users = await self.client.search_users(parts[1])
            if not users:
                print("No users found")
            for user in users or []:
                print(f"  - {user['username']} ({user.get('display_name') or user['username']})")
        elif cmd == "/conversations":
            conversations = await self.client.refresh_conversations()
            unread = self.client.sync.unread_counts()
            print("Conversations:")
            for convo in conversations:
                name = convo["username"]
                badge = f" [{unread[name]} new]" if unread.get(name) else ""
                print(f"  - {name}{badge}")
        elif cmd == "/history":
            self.show_history()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")

    async def run(self):
        """Run interactive chat session"""
        self.running = True
        self.client.sync.listeners.append(self.on_message)
        self.client.sync.start()
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    prompt_text = f"[{self.current_chat}] > " if self.current_chat else "> "
                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self.handle_command(user_input)
                    elif self.current_chat:
                        await self.send(user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except (KeyboardInterrupt, EOFError):
                    break
        finally:
            self.running = False
            await self.client.aclose()


async def authenticate(client: ChatClient) -> bool:
    """Register, log in, or unlock a stored identity"""
    if client.username and not client.is_unlocked:
        print(f"Stored identity: {client.username}")
        for _ in range(3):
            try:
                await client.unlock_identity(getpass.getpass("Password to unlock: "))
                return True
            except WrongPasswordError:
                print("Wrong password")
            except TransportError as e:
                print(f"Relay unreachable: {e}")
                return False

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "3":
            return False
        if choice not in ("1", "2"):
            print("Invalid choice")
            continue

        username = input("Username: ").strip()
        password = getpass.getpass("Password: ")
        try:
            if choice == "1":
                await client.create_identity(username, password)
                print(f"Registration successful! Welcome, {username}")
            else:
                await client.login(username, password)
                print(f"Login successful! Welcome back, {username}")
            return True
        except ConflictError:
            print("Registration failed: username already taken")
        except (AuthenticationError, WrongPasswordError):
            print("Login failed: invalid username or password")
        except TransportError as e:
            print(f"Relay error: {e}")


async def main():
    """Main entry point"""
    config = ClientConfig()
    logging.basicConfig(
        level=config.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    client = ChatClient(config)

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    if not await authenticate(client):
        await client.aclose()
        return

    await ChatShell(client).run()
    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
