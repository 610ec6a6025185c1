"""Example: two scopes sharing one Redis server without seeing each other's events."""

from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging

from scoped_pubsub import PubSubOptions, ScopedPubSub

logging.basicConfig(level=logging.INFO)


async def main() -> None:
    options = PubSubOptions.from_env()
    app1 = ScopedPubSub(options, scope="app1")
    app2 = ScopedPubSub(options, scope="app2")

    def on_signup(value, physical_channel):
        print(f"app1 got {value!r} on {physical_channel}")

    def on_other(value, physical_channel):
        print(f"app2 got {value!r} on {physical_channel}")

    await app1.subscribe("user.signup", on_signup)
    await app2.subscribe("user.signup", on_other)

    await app1.publish("user.signup", {"user_id": 101})
    await app2.publish("user.signup", {"user_id": 202})
    await asyncio.sleep(0.2)

    await app1.unsubscribe("user.signup", on_signup)
    await app2.unsubscribe("user.signup", on_other)
    await app1.quit()
    await app2.quit()


if __name__ == "__main__":
    asyncio.run(main())
