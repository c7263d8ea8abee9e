import asyncio

from utils.notify import Notifier


def test_memory_notifications_keep_only_the_most_recent():
    notifier = Notifier(max_kept=3)

    async def scenario():
        for i in range(5):
            await notifier.notify(f"farmer-{i}", "Farmer", "Update", f"message {i}")

    asyncio.run(scenario())

    assert len(notifier.sent) == 3
    assert [n["user_id"] for n in notifier.sent] == ["farmer-2", "farmer-3", "farmer-4"]


def test_notifications_go_to_collection_when_configured():
    class Collection:
        def __init__(self):
            self.docs = []

        async def insert_one(self, doc):
            self.docs.append(doc)

    collection = Collection()
    notifier = Notifier(collection)
    asyncio.run(notifier.notify("farmer-1", "Farmer", "Update", "hello", batch_id="B1"))

    assert len(notifier.sent) == 0
    assert collection.docs[0]["batch_id"] == "B1"
    assert collection.docs[0]["read"] is False
