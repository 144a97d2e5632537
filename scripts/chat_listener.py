import argparse
import asyncio

from library_chat.core.logging import setup_logging
from library_chat.schemas.chat import ChatMessage, UserType
from library_chat.websockets.connection import ChatConnection


async def main(user_id: str, user_type: UserType) -> None:
    connection = ChatConnection()
    connection.on_connection_change(
        lambda connected: print("connected" if connected else "disconnected")
    )

    def show(message: ChatMessage) -> None:
        print(f"[{message.timestamp}] {message.sender_name or message.sender_id}: {message.message}")

    connection.on_message(show)
    await connection.connect(user_id, user_type)
    print(f"Listening as {user_type.value} {user_id} on {connection.url}, Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        await connection.disconnect()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Print chat messages addressed to one user")
    parser.add_argument("user_id")
    parser.add_argument("--type", choices=[t.value for t in UserType], default=UserType.MEMBER.value)
    args = parser.parse_args()
    setup_logging()
    try:
        asyncio.run(main(args.user_id, UserType(args.type)))
    except KeyboardInterrupt:
        pass
