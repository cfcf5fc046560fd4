import asyncio
import itertools
import unittest

from devicelab.config import EngineSettings
from devicelab.diagnostics.catalog import TestCatalog
from devicelab.diagnostics.models import SECRET_MASK, ParameterKind, RunStatus, StepSpec, TestDefinition
from devicelab.diagnostics.operations import LOOPBACK_SETTLE_S
from devicelab.diagnostics.run_manager import RunManager
from devicelab.errors import DeviceBusyError, NotFoundError, ParameterValidationError
from devicelab.services.broadcaster import PROGRESS_TOPIC, STATUS_TOPIC, TEST_CHANNEL, ProgressBroadcaster
from devicelab.services.event_bus import EventBus
from tests.fakes import HEALTHY_MODEM, ScriptedChannel, drain, fast_settings, hang, modem

DEVICE = "esp32-s3-1"


class RunManagerTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.bus = EventBus()
        self.events = await self.bus.get_queue(TEST_CHANNEL)
        self.channel = ScriptedChannel({"modem-at": modem(HEALTHY_MODEM)})
        self.manager = self.make_manager()

    async def asyncTearDown(self):
        await self.manager.shutdown()

    def make_manager(self, catalog=None, **settings):
        return RunManager(
            catalog or TestCatalog(),
            self.channel,
            ProgressBroadcaster(self.bus),
            settings=fast_settings(**settings),
        )

    async def run_to_end(self, test_id, parameters=None, device_id=DEVICE):
        started = await self.manager.start(device_id, test_id, parameters)
        await self.manager.join(started["runId"])
        return await self.manager.get_status(device_id, started["runId"])

    async def wait_for_command(self, command):
        for _ in range(1000):
            if command in self.channel.commands():
                return
            await asyncio.sleep(0.001)
        self.fail(f"{command} was never sent")


class StartAndStatusTests(RunManagerTestCase):
    async def test_start_returns_fresh_running_run(self):
        self.channel.on("modem-at", hang)
        first = await self.manager.start(DEVICE, "atCommands", {})
        second = await self.manager.start(DEVICE, "atCommands", {})
        self.assertNotEqual(first["runId"], second["runId"])
        self.assertTrue(first["runId"].startswith("atCommands_"))
        self.assertEqual(first["estimatedSeconds"], 10)
        status = await self.manager.get_status(DEVICE, first["runId"])
        self.assertEqual(status["status"], "running")
        self.assertFalse(status["completed"])
        self.assertIsNone(status["endTime"])
        self.assertEqual(len(await self.manager.list_active(DEVICE)), 2)

    async def test_successful_run_moves_to_history(self):
        status = await self.run_to_end("atCommands")
        self.assertEqual(status["status"], "completed")
        self.assertEqual(status["progress"], 100)
        self.assertTrue(status["completed"])
        self.assertTrue(status["result"]["success"])
        self.assertEqual(await self.manager.list_active(DEVICE), [])
        history = await self.manager.history(DEVICE, 10)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["runId"], status["runId"])
        self.assertEqual(history[0]["result"], "pass")

    async def test_unknown_test_and_bad_parameters_are_rejected(self):
        with self.assertRaises(NotFoundError):
            await self.manager.start(DEVICE, "warpDrive", {})
        with self.assertRaises(ParameterValidationError):
            await self.manager.start(DEVICE, "led", {"duration": 5})
        self.assertEqual(await self.manager.list_active(), [])
        self.assertEqual(await self.manager.history(DEVICE), [])

    async def test_unknown_run_is_not_found(self):
        with self.assertRaises(NotFoundError):
            await self.manager.get_status(DEVICE, "nope")

    async def test_runs_are_scoped_per_device(self):
        status = await self.run_to_end("simCard", device_id="bench-2")
        with self.assertRaises(NotFoundError):
            await self.manager.get_status(DEVICE, status["runId"])
        self.assertEqual(await self.manager.history(DEVICE), [])

    async def test_secret_parameters_are_masked(self):
        self.channel.on("wifi-connect", hang)
        started = await self.manager.start(DEVICE, "wifi", {"ssid": "lab", "password": "hunter2"})
        status = await self.manager.get_status(DEVICE, started["runId"])
        self.assertEqual(status["parameters"]["password"], SECRET_MASK)


class FailureTests(RunManagerTestCase):
    async def test_failed_step_names_the_step(self):
        self.channel.on("modem-at", modem(dict(HEALTHY_MODEM, **{"AT+CREG?": "+CREG: 0,3"})))
        status = await self.run_to_end("atCommands")
        self.assertEqual(status["status"], "failed")
        self.assertIn("Network registration", status["message"])
        self.assertEqual(len(status["result"]["steps"]), 4)
        history = await self.manager.history(DEVICE)
        self.assertEqual(history[0]["result"], "fail")
        self.assertIn("Network registration", history[0]["error"])

    async def test_unreachable_device_fails_run(self):
        self.channel.available = False
        status = await self.run_to_end("simCard")
        self.assertEqual(status["status"], "failed")
        self.assertIn("not reachable", status["message"])
        self.assertEqual(self.channel.calls, [])

    async def test_unexpected_error_becomes_failure(self):
        self.channel.on("modem-at", RuntimeError("serial port vanished"))
        status = await self.run_to_end("simCard")
        self.assertEqual(status["status"], "failed")
        self.assertEqual(status["message"], "serial port vanished")
        self.assertEqual(len(await self.manager.history(DEVICE)), 1)

    async def test_run_deadline_is_enforced(self):
        slow = TestDefinition(
            id="slow", name="Slow", category="modem", steps=(StepSpec("wait", "modem-at"),), timeout_ms=50
        )
        self.manager = self.make_manager(TestCatalog([slow]), deadline_grace_ms=0)
        self.channel.on("modem-at", hang)
        status = await self.run_to_end("slow")
        self.assertEqual(status["status"], "failed")
        self.assertIn("exceeded time limit", status["message"])

    async def test_single_run_per_device_policy(self):
        self.manager = self.make_manager(single_run_per_device=True)
        self.channel.on("modem-at", hang)
        await self.manager.start(DEVICE, "simCard", {})
        with self.assertRaises(DeviceBusyError):
            await self.manager.start(DEVICE, "simCard", {})
        await self.manager.start("bench-2", "simCard", {})


class StopTests(RunManagerTestCase):
    async def test_stop_finalizes_run_and_still_cleans_up(self):
        started = await self.manager.start(DEVICE, "led", {"duration": 10000})
        await self.wait_for_command("gpio-write")
        stopped = await self.manager.stop(DEVICE, started["runId"])
        self.assertEqual(stopped["status"], "stopped")
        await self.manager.join(started["runId"])

        status = await self.manager.get_status(DEVICE, started["runId"])
        self.assertEqual(status["status"], "stopped")
        self.assertTrue(status["completed"])
        self.assertEqual(len(await self.manager.history(DEVICE)), 1)
        self.assertEqual(self.channel.payloads("gpio-write")[-1]["value"], 0)

    async def test_stop_of_inactive_run_is_not_found(self):
        status = await self.run_to_end("simCard")
        with self.assertRaises(NotFoundError):
            await self.manager.stop(DEVICE, status["runId"])
        with self.assertRaises(NotFoundError):
            await self.manager.stop(DEVICE, "never-started")

    async def test_no_transition_out_of_terminal_state(self):
        status = await self.run_to_end("simCard")
        changed = await self.manager.complete(DEVICE, status["runId"], RunStatus.FAILED, "late")
        self.assertFalse(changed)
        status = await self.manager.get_status(DEVICE, status["runId"])
        self.assertEqual(status["status"], "completed")

    async def test_in_flight_reply_is_discarded_after_stop(self):
        release = asyncio.Event()

        async def slow_reply(payload):
            await release.wait()
            return {"response": "OK"}

        self.channel.on("modem-at", slow_reply)
        started = await self.manager.start(DEVICE, "atCommands", {})
        await self.wait_for_command("modem-at")
        await self.manager.stop(DEVICE, started["runId"])
        release.set()
        await self.manager.join(started["runId"])
        self.assertEqual(len(self.channel.payloads("modem-at")), 1)
        status = await self.manager.get_status(DEVICE, started["runId"])
        self.assertEqual(status["status"], "stopped")


class ProgressTests(RunManagerTestCase):
    async def test_progress_is_monotonic_and_ends_at_terminal(self):
        status = await self.run_to_end("atCommands")
        events = [event for event in drain(self.events) if event.get("runId") == status["runId"]]
        progress = [event["progress"] for event in events if event["event"] == PROGRESS_TOPIC]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[-1], 100)
        self.assertNotIn(100, progress[:-1])
        statuses = [event["status"] for event in events if event["event"] == STATUS_TOPIC]
        self.assertEqual(statuses, ["running", "completed"])
        terminal_index = next(
            index for index, event in enumerate(events) if event.get("status") == "completed"
        )
        first_hundred = next(
            index for index, event in enumerate(events) if event.get("progress") == 100
        )
        self.assertLess(terminal_index, first_hundred)

    async def test_reported_progress_is_clamped(self):
        self.channel.on("modem-at", hang)
        started = await self.manager.start(DEVICE, "simCard", {})
        run_id = started["runId"]
        await self.manager.report_progress(DEVICE, run_id, 50, "half")
        await self.manager.report_progress(DEVICE, run_id, 20, "late update")
        self.assertEqual((await self.manager.get_status(DEVICE, run_id))["progress"], 50)
        await self.manager.report_progress(DEVICE, run_id, 100, "almost")
        self.assertEqual((await self.manager.get_status(DEVICE, run_id))["progress"], 99)

    async def test_events_carry_device_and_run(self):
        await self.run_to_end("simCard")
        for event in drain(self.events):
            self.assertEqual(event["deviceId"], DEVICE)
            self.assertIn("runId", event)
            self.assertIn("timestamp", event)


class HistoryTests(RunManagerTestCase):
    async def test_history_is_capped(self):
        run_ids = []
        for _ in range(150):
            status = await self.run_to_end("simCard")
            run_ids.append(status["runId"])
        history = await self.manager.history(DEVICE, 1000)
        self.assertEqual(len(history), 100)
        self.assertEqual(history[0]["runId"], run_ids[-1])
        self.assertEqual(history[-1]["runId"], run_ids[50])
        with self.assertRaises(NotFoundError):
            await self.manager.get_status(DEVICE, run_ids[0])

    async def test_clear_and_remove(self):
        first = await self.run_to_end("simCard")
        second = await self.run_to_end("simCard")
        self.assertTrue(await self.manager.remove_result(DEVICE, first["runId"]))
        self.assertFalse(await self.manager.remove_result(DEVICE, first["runId"]))
        with self.assertRaises(NotFoundError):
            await self.manager.get_status(DEVICE, first["runId"])
        self.assertEqual(await self.manager.clear_history(DEVICE), 1)
        self.assertEqual(await self.manager.history(DEVICE), [])
        with self.assertRaises(NotFoundError):
            await self.manager.get_status(DEVICE, second["runId"])

    async def test_exactly_one_entry_per_terminal_run(self):
        self.channel.on("modem-at", hang)
        running = await self.manager.start(DEVICE, "simCard", {})
        await self.manager.stop(DEVICE, running["runId"])
        self.channel.on("modem-at", modem(HEALTHY_MODEM))
        await self.run_to_end("simCard")
        await self.manager.shutdown()
        run_ids = [entry["runId"] for entry in await self.manager.history(DEVICE)]
        self.assertEqual(len(run_ids), len(set(run_ids)))
        self.assertEqual(len(run_ids), 2)


if __name__ == "__main__":
    unittest.main()


def _slowest_parameter_sets(definition):
    """Every enum choice combined with each numeric parameter at its maximum."""
    fixed = {"testPattern": "01" * 16, "ssid": "bench-ap"}
    base = {}
    enums = []
    for spec in definition.parameters:
        if spec.kind is ParameterKind.NUMBER and spec.maximum is not None:
            base[spec.name] = spec.maximum
        elif spec.kind is ParameterKind.ENUM:
            enums.append((spec.name, spec.choices))
        elif spec.name in fixed:
            base[spec.name] = fixed[spec.name]
    combos = itertools.product(*(choices for _, choices in enums)) if enums else [()]
    for combo in combos:
        supplied = dict(base)
        supplied.update(zip((name for name, _ in enums), combo))
        yield supplied


# seconds a healthy device must spend sleeping or polling for each test
MINIMUM_WAIT_S = {
    "led": lambda p: p["duration"] / 1000,
    "gpioLoopback": lambda p: len(p["testPattern"]) * LOOPBACK_SETTLE_S,
    "microphone": lambda p: p["duration"] / 1000,
    "gps": lambda p: p["timeout"],
    "wifi": lambda p: p["timeout"],
    "battery": lambda p: (p["samples"] - 1) * p["interval"] / 1000,
}


class TimeLimitTests(unittest.TestCase):
    def setUp(self):
        self.catalog = TestCatalog()
        self.settings = EngineSettings()
        self.manager = RunManager(
            self.catalog, ScriptedChannel(), ProgressBroadcaster(EventBus()), settings=self.settings
        )

    def test_slowest_valid_parameters_fit_the_time_limit(self):
        command_s = self.settings.command_timeout_ms / 1000
        for definition in self.catalog.list_all():
            for supplied in _slowest_parameter_sets(definition):
                parameters = self.catalog.validate(definition.id, supplied)
                limit = self.manager._time_limit(definition, parameters)
                with self.subTest(test=definition.id, parameters=parameters):
                    self.assertGreaterEqual(limit, definition.timeout_ms / 1000)
                    wait = MINIMUM_WAIT_S.get(definition.id)
                    if wait is not None:
                        self.assertGreater(limit, wait(parameters) + command_s)

    def test_longest_battery_sampling_is_covered(self):
        battery = self.catalog.get("battery")
        parameters = self.catalog.validate("battery", {"samples": 100, "interval": 60000})
        self.assertGreaterEqual(self.manager._time_limit(battery, parameters), 99 * 60)

    def test_step_tests_get_the_timeout_per_step(self):
        at_commands = self.catalog.get("atCommands")
        limit = self.manager._time_limit(at_commands, {})
        expected = (5 * at_commands.timeout_ms + self.settings.deadline_grace_ms) / 1000
        self.assertEqual(limit, expected)

    def test_full_system_covers_every_component(self):
        full = self.catalog.get("fullSystem")
        components = sum(
            self.manager._time_limit(self.catalog.get(test_id), self.catalog.validate(test_id, {}))
            - self.settings.deadline_grace_ms / 1000
            for test_id in full.components
        )
        self.assertGreaterEqual(
            self.manager._time_limit(full, {}), components + self.settings.deadline_grace_ms / 1000
        )

    def test_no_limit_when_deadline_disabled(self):
        self.settings.enforce_run_deadline = False
        self.assertIsNone(self.manager._time_limit(self.catalog.get("battery"), {}))
