import asyncio
import tempfile
import unittest

from fakes import write_script
from pipeline.errors import ProcessExitFailure, SpawnFailure, stderr_tail
from pipeline.process_runner import ProcessRunner, find_binary


class ProcessRunnerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.runner = ProcessRunner()

    async def asyncTearDown(self):
        self.tmpdir.cleanup()

    async def test_missing_binary_raises_spawn_failure(self):
        with self.assertRaises(SpawnFailure) as ctx:
            await self.runner.run("/nonexistent/definitely-not-a-tool", ["--version"])
        self.assertEqual(ctx.exception.kind, "spawn_failure")
        self.assertEqual(ctx.exception.command, "/nonexistent/definitely-not-a-tool")

    async def test_run_collects_stdout_stderr_and_exit_code(self):
        script = write_script(self.tmpdir.name, "noisy", """
            sys.stdout.write("out:" + " ".join(ARGS))
            sys.stderr.write("first\\nsecond\\n")
            sys.exit(3)
        """)
        result = await self.runner.run(script, ["a", "b"])
        self.assertEqual(result.exit_code, 3)
        self.assertEqual(result.stdout, "out:a b")
        self.assertIn("second", result.stderr)

    async def test_stdin_is_closed(self):
        script = write_script(self.tmpdir.name, "reader", """
            sys.stdout.write(repr(sys.stdin.read()))
        """)
        result = await self.runner.run(script, [])
        self.assertEqual(result.stdout, "''")

    async def test_env_overrides_are_merged(self):
        script = write_script(self.tmpdir.name, "env", """
            sys.stdout.write(os.environ.get("MEDIA_TEST_FLAG", "") + "|" + os.environ.get("PATH", ""))
        """)
        result = await self.runner.run(script, [], env={"MEDIA_TEST_FLAG": "on"})
        flag, path = result.stdout.split("|", 1)
        self.assertEqual(flag, "on")
        self.assertTrue(path)

    async def test_kill_is_idempotent(self):
        script = write_script(self.tmpdir.name, "sleeper", """
            time.sleep(60)
        """)
        process = await self.runner.spawn(script, [])
        process.kill()
        process.kill()
        code = await process.wait()
        self.assertNotEqual(code, 0)
        # already exited: still a no-op
        process.kill()

    async def test_cancelling_communicate_kills_the_child(self):
        script = write_script(self.tmpdir.name, "sleeper", """
            time.sleep(60)
        """)
        process = await self.runner.spawn(script, [])
        task = asyncio.ensure_future(process.communicate())
        await asyncio.sleep(0.2)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        code = await asyncio.wait_for(process.wait(), timeout=10)
        self.assertNotEqual(code, 0)

    async def test_streaming_drains_stderr_while_reading_stdout(self):
        # more stderr than a pipe buffer holds; would block without draining
        script = write_script(self.tmpdir.name, "chatty", """
            for i in range(5000):
                sys.stderr.write(f"[download] {i} of 5000\\r")
            sys.stderr.write("\\nlast line\\n")
            sys.stderr.flush()
            sys.stdout.buffer.write(b"x" * 200000)
        """)
        process = await self.runner.spawn_streaming(script, [])
        received = b""
        async for chunk in process.iter_stdout(4096):
            received += chunk
        code = await process.wait()
        self.assertEqual(code, 0)
        self.assertEqual(len(received), 200000)
        self.assertEqual(process.stderr_tail.splitlines()[-1], "last line")
        self.assertLessEqual(len(process.stderr_tail.splitlines()), 200)

    async def test_communicate_rejected_on_streaming_process(self):
        script = write_script(self.tmpdir.name, "quick", "")
        process = await self.runner.spawn_streaming(script, [])
        with self.assertRaises(RuntimeError):
            await process.communicate()
        await process.wait()


def test_find_binary_falls_back_to_bare_name():
    assert find_binary("no-such-tool-anywhere") == "no-such-tool-anywhere"


def test_process_exit_failure_keeps_a_bounded_stderr_tail():
    stderr = "\n".join(f"line {i}" for i in range(100)) + "\nERROR: Video unavailable\n"
    error = ProcessExitFailure("yt-dlp", 1, stderr)

    assert error.kind == "process_exit_failure"
    assert error.exit_code == 1
    assert len(error.stderr_tail.splitlines()) == 20
    assert error.stderr_tail.endswith("ERROR: Video unavailable")
    assert "Video unavailable" in str(error)
    assert error.matches(["video UNAVAILABLE"])
    assert not error.matches(["age-restricted"])


def test_stderr_tail_caps_characters():
    assert len(stderr_tail("x" * 5000)) == 2000
    assert stderr_tail("") == ""
