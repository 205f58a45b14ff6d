"""Tests for cursor-tracked polling (channels/polling.py).

A scripted in-memory source stands in for chat.db / getUpdates so the
cursor, seeding, filtering and shutdown behaviour can be checked without
subprocesses or network.
"""
from __future__ import annotations

import asyncio
import logging
import unittest

from channels.base import ParseError, SendError, TransportError
from channels.polling import (
    MessageSource,
    MessageTransport,
    PollCursor,
    PollingChannel,
    SourceRecord,
)
from channels.scheduler import DeliverySink


class FakeSource(MessageSource):
    def __init__(self, records=None, max_pos=0):
        self.records: list[SourceRecord] = list(records or [])
        self.max_pos = max_pos
        self.failures: list[Exception] = []
        self.fetches: list[int] = []

    def add(self, position, sender, text, **kwargs):
        self.records.append(SourceRecord(position, sender, text, **kwargs))

    async def max_position(self):
        if isinstance(self.max_pos, Exception):
            raise self.max_pos
        return self.max_pos

    async def fetch_since(self, cursor, limit):
        self.fetches.append(cursor)
        if self.failures:
            raise self.failures.pop(0)
        rows = sorted((r for r in self.records if r.position > cursor), key=lambda r: r.position)
        return rows[:limit]


class FakeTransport(MessageTransport):
    def __init__(self, fail=False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def deliver(self, message, target):
        if self.fail:
            raise SendError("osascript exited 1: not authorized")
        self.sent.append((message, target))


class FakePollingChannel(PollingChannel):
    name = "fake"

    @classmethod
    def from_settings(cls, settings, logger=None):
        raise NotImplementedError

    async def health_check(self):
        return True


def drain(sink: DeliverySink) -> list:
    messages = []
    while sink.qsize():
        messages.append(sink._queue.get_nowait())
    return messages


# ---------------------------------------------------------------------------
# PollCursor
# ---------------------------------------------------------------------------

class TestPollCursor(unittest.TestCase):
    def test_starts_at_given_position(self):
        self.assertEqual(PollCursor().position, 0)
        self.assertEqual(PollCursor(57).position, 57)

    def test_negative_start_clamped(self):
        self.assertEqual(PollCursor(-5).position, 0)

    def test_advance_only_moves_forward(self):
        cursor = PollCursor(10)
        self.assertTrue(cursor.advance(11))
        self.assertFalse(cursor.advance(11))
        self.assertFalse(cursor.advance(3))
        self.assertEqual(cursor.position, 11)
        self.assertTrue(cursor.advance(40))
        self.assertEqual(cursor.position, 40)


# ---------------------------------------------------------------------------
# PollingChannel.poll_once / seed_cursor
# ---------------------------------------------------------------------------

class TestPollOnce(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.logger = logging.getLogger("test.polling")
        self.source = FakeSource()
        self.transport = FakeTransport()
        self.sink = DeliverySink(100)

    def make_channel(self, allow_list, **kwargs):
        return FakePollingChannel(
            self.source, self.transport, allow_list, logger=self.logger, **kwargs,
        )

    async def test_seed_starts_at_store_maximum(self):
        self.source.max_pos = 57
        channel = self.make_channel(["*"])
        cursor = await channel.seed_cursor()
        self.assertEqual(cursor.position, 57)

    async def test_seed_failure_starts_at_zero(self):
        self.source.max_pos = TransportError("sqlite3 max rowid failed: disk I/O error")
        channel = self.make_channel(["*"])
        with self.assertLogs("test.polling", level="WARNING") as logs:
            cursor = await channel.seed_cursor()
        self.assertEqual(cursor.position, 0)
        self.assertIn("starting cursor at 0", logs.output[0])

    async def test_history_before_seed_is_never_emitted(self):
        for rowid in range(1, 6):
            self.source.add(rowid, "+1234567890", f"old {rowid}")
        self.source.max_pos = 5
        channel = self.make_channel(["*"])
        cursor = await channel.seed_cursor()

        self.source.add(6, "+1234567890", "new")
        self.assertTrue(await channel.poll_once(cursor, self.sink))

        self.assertEqual([m.content for m in drain(self.sink)], ["new"])
        self.assertEqual(self.source.fetches, [5])

    async def test_emits_in_ascending_order_and_advances(self):
        self.source.add(13, "a", "third")
        self.source.add(11, "a", "first")
        self.source.add(12, "a", "second")
        channel = self.make_channel(["*"])
        cursor = PollCursor(10)

        await channel.poll_once(cursor, self.sink)

        messages = drain(self.sink)
        self.assertEqual([m.id for m in messages], ["11", "12", "13"])
        self.assertEqual([m.content for m in messages], ["first", "second", "third"])
        self.assertTrue(all(m.channel == "fake" for m in messages))
        self.assertEqual(cursor.position, 13)

    async def test_repoll_with_no_new_rows_emits_nothing(self):
        self.source.add(11, "a", "hello")
        channel = self.make_channel(["*"])
        cursor = PollCursor(10)

        await channel.poll_once(cursor, self.sink)
        await channel.poll_once(cursor, self.sink)

        self.assertEqual(len(drain(self.sink)), 1)
        self.assertEqual(cursor.position, 11)
        self.assertEqual(self.source.fetches, [10, 11])

    async def test_out_of_order_stale_rows_are_ignored(self):
        class ReplayingSource(FakeSource):
            async def fetch_since(self, cursor, limit):
                return list(self.records)

        self.source = ReplayingSource([SourceRecord(9, "a", "stale"), SourceRecord(12, "a", "fresh")])
        channel = self.make_channel(["*"])
        cursor = PollCursor(10)

        await channel.poll_once(cursor, self.sink)
        await channel.poll_once(cursor, self.sink)

        self.assertEqual([m.content for m in drain(self.sink)], ["fresh"])

    async def test_page_size_limits_each_fetch(self):
        for rowid in range(1, 26):
            self.source.add(rowid, "a", f"m{rowid}")
        channel = self.make_channel(["*"], page_size=20)
        cursor = PollCursor(0)

        await channel.poll_once(cursor, self.sink)
        self.assertEqual(len(drain(self.sink)), 20)
        self.assertEqual(cursor.position, 20)

        await channel.poll_once(cursor, self.sink)
        self.assertEqual([m.id for m in drain(self.sink)], ["21", "22", "23", "24", "25"])

    async def test_empty_and_whitespace_bodies_dropped_but_consumed(self):
        self.source.add(11, "a", "")
        self.source.add(12, "a", "   \n\t")
        self.source.add(13, "a", "  real  ")
        channel = self.make_channel(["*"])
        cursor = PollCursor(10)

        await channel.poll_once(cursor, self.sink)

        messages = drain(self.sink)
        self.assertEqual([m.id for m in messages], ["13"])
        self.assertEqual(messages[0].content, "  real  ")
        self.assertEqual(cursor.position, 13)

    async def test_reply_to_carried_onto_message(self):
        self.source.add(11, "alice", "hi", reply_to="-100200")
        channel = self.make_channel(["*"])

        await channel.poll_once(PollCursor(10), self.sink)

        message = drain(self.sink)[0]
        self.assertEqual(message.reply_to, "-100200")
        self.assertEqual(message.reply_target, "-100200")

    async def test_alias_can_satisfy_allow_list(self):
        self.source.add(11, "alice", "hi", aliases=("123456",))
        self.source.add(12, "mallory", "hi", aliases=("999",))
        channel = self.make_channel(["123456"])

        await channel.poll_once(PollCursor(10), self.sink)

        self.assertEqual([m.sender for m in drain(self.sink)], ["alice"])

    async def test_returns_false_once_sink_closed(self):
        self.source.add(11, "a", "hello")
        channel = self.make_channel(["*"])
        self.sink.close()

        self.assertFalse(await channel.poll_once(PollCursor(10), self.sink))

    async def test_send_delegates_to_transport(self):
        channel = self.make_channel(["*"])
        await channel.send("pong", "+15555550100")
        self.assertEqual(self.transport.sent, [("pong", "+15555550100")])

    async def test_send_failure_raises_send_error(self):
        self.transport.fail = True
        channel = self.make_channel(["*"])
        with self.assertRaises(SendError) as ctx:
            await channel.send("pong", "+15555550100")
        self.assertIn("not authorized", str(ctx.exception))


# ---------------------------------------------------------------------------
# Behaviour scenarios
# ---------------------------------------------------------------------------

class TestPollingScenarios(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.logger = logging.getLogger("test.polling")
        self.sink = DeliverySink(100)

    async def test_scenario_a_allowed_sender_delivered_once(self):
        source = FakeSource(max_pos=100)
        channel = FakePollingChannel(source, FakeTransport(), ["+1234567890"], logger=self.logger)
        cursor = await channel.seed_cursor()

        source.add(101, "+1234567890", "hi")
        await channel.poll_once(cursor, self.sink)
        await channel.poll_once(cursor, self.sink)

        messages = drain(self.sink)
        self.assertEqual(len(messages), 1)
        self.assertEqual((messages[0].id, messages[0].sender, messages[0].content),
                         ("101", "+1234567890", "hi"))
        self.assertEqual(cursor.position, 101)

    async def test_scenario_b_denied_sender_consumed(self):
        source = FakeSource([SourceRecord(101, "+9999999999", "hi")], max_pos=100)
        channel = FakePollingChannel(source, FakeTransport(), ["+1234567890"], logger=self.logger)
        cursor = await channel.seed_cursor()

        await channel.poll_once(cursor, self.sink)

        self.assertEqual(drain(self.sink), [])
        self.assertEqual(cursor.position, 101)

    async def test_scenario_c_case_insensitive_match(self):
        source = FakeSource([SourceRecord(1, "user@example.com", "hello")])
        channel = FakePollingChannel(source, FakeTransport(), ["User@Example.com"], logger=self.logger)

        await channel.poll_once(PollCursor(0), self.sink)

        self.assertEqual([m.sender for m in drain(self.sink)], ["user@example.com"])

    async def test_scenario_d_fetch_failure_leaves_cursor(self):
        source = FakeSource([SourceRecord(51, "a", "later")], max_pos=50)
        source.failures.append(TransportError("sqlite3 query failed: database is locked"))
        channel = FakePollingChannel(source, FakeTransport(), ["*"], logger=self.logger)
        cursor = await channel.seed_cursor()

        with self.assertLogs("test.polling", level="WARNING") as logs:
            self.assertTrue(await channel.poll_once(cursor, self.sink))
        self.assertIn("poll error", logs.output[0])
        self.assertEqual(cursor.position, 50)
        self.assertEqual(drain(self.sink), [])

        await channel.poll_once(cursor, self.sink)
        self.assertEqual(source.fetches, [50, 50])
        self.assertEqual([m.id for m in drain(self.sink)], ["51"])

    async def test_parse_error_also_skips_cycle(self):
        source = FakeSource(max_pos=5)
        source.failures.append(ParseError("unexpected sqlite3 output"))
        channel = FakePollingChannel(source, FakeTransport(), ["*"], logger=self.logger)
        cursor = await channel.seed_cursor()

        with self.assertLogs("test.polling", level="WARNING"):
            await channel.poll_once(cursor, self.sink)
        self.assertEqual(cursor.position, 5)


# ---------------------------------------------------------------------------
# listen loop
# ---------------------------------------------------------------------------

class TestListenLoop(unittest.IsolatedAsyncioTestCase):
    async def test_listen_delivers_new_rows_and_stops_on_close(self):
        source = FakeSource(max_pos=10)
        channel = FakePollingChannel(
            source, FakeTransport(), ["*"], poll_interval=0.01,
            logger=logging.getLogger("test.polling"),
        )
        sink = DeliverySink(10)
        task = asyncio.create_task(channel.listen(sink))

        source.add(11, "+1234567890", "ping")
        message = await asyncio.wait_for(sink.get(), timeout=2)
        self.assertEqual(message.id, "11")
        self.assertEqual(channel.cursor.position, 11)

        sink.close()
        await asyncio.wait_for(task, timeout=2)
        self.assertTrue(task.done())

    async def test_close_interrupts_long_interval(self):
        channel = FakePollingChannel(
            FakeSource(), FakeTransport(), ["*"], poll_interval=3600,
            logger=logging.getLogger("test.polling"),
        )
        sink = DeliverySink(10)
        task = asyncio.create_task(channel.listen(sink))
        await asyncio.sleep(0.05)

        sink.close()
        await asyncio.wait_for(task, timeout=2)

    async def test_close_interrupts_slow_fetch(self):
        class SlowSource(FakeSource):
            async def fetch_since(self, cursor, limit):
                self.fetches.append(cursor)
                await asyncio.sleep(25)
                return []

        source = SlowSource()
        channel = FakePollingChannel(source, FakeTransport(), ["*"], poll_interval=0.01,
                                     logger=logging.getLogger("test.polling"))
        sink = DeliverySink(10)
        task = asyncio.create_task(channel.listen(sink))
        while not source.fetches:
            await asyncio.sleep(0.01)

        sink.close()
        await asyncio.wait_for(task, timeout=2)
        self.assertEqual(channel.cursor.position, 0)

    async def test_poll_once_reports_close_during_fetch(self):
        class SlowSource(FakeSource):
            async def fetch_since(self, cursor, limit):
                await asyncio.sleep(25)
                return [SourceRecord(cursor + 1, "a", "late")]

        channel = FakePollingChannel(SlowSource(), FakeTransport(), ["*"],
                                     logger=logging.getLogger("test.polling"))
        sink = DeliverySink(10)
        cursor = PollCursor(3)
        asyncio.get_running_loop().call_later(0.05, sink.close)

        self.assertFalse(await asyncio.wait_for(channel.poll_once(cursor, sink), timeout=2))
        self.assertEqual(cursor.position, 3)

    async def test_listen_on_closed_sink_returns_without_fetching(self):
        source = FakeSource()
        channel = FakePollingChannel(source, FakeTransport(), ["*"], poll_interval=0.01,
                                     logger=logging.getLogger("test.polling"))
        sink = DeliverySink(10)
        sink.close()

        await asyncio.wait_for(channel.listen(sink), timeout=2)
        self.assertEqual(source.fetches, [])


if __name__ == "__main__":
    unittest.main()
