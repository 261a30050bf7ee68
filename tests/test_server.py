import io
import json
import os
import tempfile
import unittest

from channelsync.server import _load_frames, main, simulate


def _lines(buffer: io.StringIO):
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


class TestLoadFrames(unittest.TestCase):
    def test_load_frames_accepts_array_object_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "render"}]))
        object_buffer = io.StringIO(json.dumps({"t": "join", "name": "Agent_1"}))
        ndjson_buffer = io.StringIO("\n".join(['{"t": "one"}', "", '{"t": "two"}']))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "render"}])
        self.assertEqual(list(_load_frames(object_buffer)), [{"t": "join", "name": "Agent_1"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])


class TestSimulate(unittest.IsolatedAsyncioTestCase):
    async def test_join_switch_and_chat(self):
        frames = [
            {"t": "render"},
            {"t": "join", "name": "  Agent_1 "},
            {"t": "select", "channel": "general"},
            {"t": "send", "text": "checking in"},
            {"t": "store.insert", "kind": "sessions", "fields": {"display_name": "Viper", "channel": "general"}},
            {
                "t": "store.insert",
                "kind": "messages",
                "fields": {"author": "Viper", "content": "copy that", "channel": "general"},
            },
        ]
        buffer = io.StringIO()

        await simulate(frames, buffer)

        lines = _lines(buffer)
        self.assertEqual(len(lines), 6)
        self.assertFalse(lines[0]["joined"])
        self.assertEqual(lines[0]["channels"], [])
        self.assertEqual(lines[1]["display_name"], "Agent_1")
        self.assertEqual(lines[1]["channels"], ["classified", "general", "intel-reports", "operations"])
        final = lines[-1]
        self.assertEqual(
            final["messages"],
            [{"author": "Agent_1", "content": "checking in"}, {"author": "Viper", "content": "copy that"}],
        )
        self.assertEqual(final["online"], ["Agent_1", "Viper"])
        self.assertFalse(final["messages_stale"])

    async def test_errors_are_reported_and_do_not_stop_the_run(self):
        frames = [
            {"t": "send", "text": "too early"},
            {"t": "join", "name": ""},
            {"t": "join", "name": "Agent_1"},
            {"t": "select", "channel": "nowhere"},
            {"t": "send", "text": "   "},
            {"t": "render"},
        ]
        buffer = io.StringIO()

        await simulate(frames, buffer)

        lines = _lines(buffer)
        self.assertEqual([line["t"] for line in lines], ["error", "error", "state", "error", "error", "state"])
        self.assertEqual({line["code"] for line in lines if line["t"] == "error"}, {"validation_error"})
        self.assertTrue(lines[-1]["joined"])

    async def test_unknown_frame_type_is_reported_and_run_continues(self):
        frames = [{"t": "join", "name": "Agent_1"}, {"t": "bogus"}, {"t": "send", "text": "still here"}]
        buffer = io.StringIO()

        await simulate(frames, buffer)

        lines = _lines(buffer)
        self.assertEqual([line["t"] for line in lines], ["state", "error", "state"])
        self.assertEqual(lines[1]["code"], "validation_error")
        self.assertIn("bogus", lines[1]["message"])
        self.assertEqual(lines[-1]["messages"], [{"author": "Agent_1", "content": "still here"}])


class TestMain(unittest.TestCase):
    def test_simulate_command_reads_frames_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "frames.json")
            with open(path, "w", encoding="utf-8") as handle:
                json.dump([{"t": "join", "name": "Agent_1"}, {"t": "send", "text": "hello"}], handle)
            buffer = io.StringIO()

            exit_code = main(["simulate", "-f", path], output=buffer)

        self.assertEqual(exit_code, 0)
        lines = _lines(buffer)
        self.assertEqual(lines[-1]["messages"], [{"author": "Agent_1", "content": "hello"}])

    def test_seed_command_is_idempotent(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "seed.db")
            first = io.StringIO()
            second = io.StringIO()

            self.assertEqual(main(["seed", "--db", db_path], output=first), 0)
            self.assertEqual(main(["seed", "--db", db_path], output=second), 0)

        self.assertIn("created #general (public)", first.getvalue())
        self.assertIn("created #operations (private)", first.getvalue())
        self.assertEqual(second.getvalue().strip(), "channels already present")


if __name__ == "__main__":
    unittest.main()
