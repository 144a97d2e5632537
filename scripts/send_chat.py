import argparse
import asyncio

from library_chat.core.logging import setup_logging
from library_chat.schemas.chat import ChatMessage, UserType
from library_chat.websockets.connection import ChatConnection


async def main(args: argparse.Namespace) -> None:
    sender_type = UserType(args.sender_type)
    receiver_type = UserType.MEMBER if sender_type == UserType.ADMIN else UserType.ADMIN
    connection = ChatConnection()
    echo: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_message(message: ChatMessage) -> None:
        if message.sender_id == args.sender_id and not echo.done():
            echo.set_result(message)

    connection.on_message(on_message)
    await connection.connect(args.sender_id, sender_type)
    try:
        await connection.send_message(
            ChatMessage(
                sender_type=sender_type,
                sender_id=args.sender_id,
                sender_name=args.sender_name,
                receiver_type=receiver_type,
                receiver_id=args.receiver_id,
                receiver_name="",
                message=args.text,
            )
        )
        try:
            stored = await asyncio.wait_for(echo, timeout=5)
        except asyncio.TimeoutError:
            print("Timed out waiting for the server echo")
            return
        print(f"Stored as message {stored.id} at {stored.timestamp}")
    finally:
        await connection.disconnect()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Send one chat message and wait for the server echo")
    parser.add_argument("sender_id")
    parser.add_argument("receiver_id")
    parser.add_argument("text")
    parser.add_argument("--sender-type", choices=[t.value for t in UserType], default=UserType.ADMIN.value)
    parser.add_argument("--sender-name", default="")
    args = parser.parse_args()
    setup_logging()
    asyncio.run(main(args))
