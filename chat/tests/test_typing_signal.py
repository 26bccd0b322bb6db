import asyncio
import unittest

from chat_test_util import RecordingStore, settle

from retriva_chat.typing_signal import TypingSignal


class TypingSignalTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = RecordingStore()
        await self.store.set("chats/c1", {"participants": ["alice", "bob"], "typing": {}})
        self.store.batches.clear()
        self.signal = TypingSignal(self.store, "c1", "alice", idle_seconds=0.05)

    async def asyncTearDown(self):
        await self.signal.close()

    def _flag_writes(self):
        return [payload["typing.alice"] for payload in self.store.writes_to("chats/c1") if "typing.alice" in payload]

    async def test_flag_rises_once_per_burst_and_clears_when_idle(self):
        for _ in range(5):
            self.signal.keystroke()
            await asyncio.sleep(0.01)
        self.assertTrue(self.signal.typing)
        self.assertEqual(self._flag_writes(), [True])
        self.assertTrue((await self.store.get("chats/c1")).get("typing")["alice"])

        await asyncio.sleep(0.12)
        self.assertFalse(self.signal.typing)
        self.assertEqual(self._flag_writes(), [True, False])
        self.assertFalse((await self.store.get("chats/c1")).get("typing")["alice"])

    async def test_new_burst_after_idle(self):
        self.signal.keystroke()
        await asyncio.sleep(0.12)
        self.signal.keystroke()
        await settle()
        self.assertEqual(self._flag_writes(), [True, False, True])

    async def test_close_clears_raised_flag(self):
        self.signal.keystroke()
        await self.signal.close()
        self.assertFalse(self.signal.typing)
        self.assertEqual(self._flag_writes(), [True, False])

    async def test_close_when_idle_writes_nothing(self):
        await self.signal.close()
        self.assertEqual(self.store.batches, [])

    async def test_store_failure_is_logged(self):
        signal = TypingSignal(self.store, "missing", "alice", idle_seconds=0.05)
        with self.assertLogs("retriva_chat.typing_signal", level="WARNING"):
            signal.keystroke()
            await settle()
        await signal.close()


if __name__ == "__main__":
    unittest.main()
