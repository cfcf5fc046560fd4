import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from devicelab.services.logging_service import LoggingService


class LoggingServiceTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_file_handler_added_when_log_dir_is_writable(self):
        service = LoggingService(self.root / "logs")
        with mock.patch("logging.basicConfig") as basic_config:
            service.configure()
        handlers = basic_config.call_args.kwargs["handlers"]
        self.assertTrue(any(isinstance(handler, logging.FileHandler) for handler in handlers))
        for handler in handlers:
            handler.close()

    def test_unusable_log_dir_is_reported(self):
        blocker = self.root / "logs"
        blocker.write_text("not a directory", encoding="utf-8")
        service = LoggingService(blocker)
        with mock.patch("logging.basicConfig") as basic_config, self.assertLogs(
            "devicelab.services.logging_service", level="WARNING"
        ) as logs:
            service.configure()
        self.assertEqual(len(basic_config.call_args.kwargs["handlers"]), 1)
        self.assertIn("File logging disabled", logs.output[0])

    def test_configure_runs_once(self):
        service = LoggingService(self.root / "logs")
        with mock.patch("logging.basicConfig") as basic_config:
            service.configure()
            service.configure()
        self.assertEqual(basic_config.call_count, 1)
        for handler in basic_config.call_args.kwargs["handlers"]:
            handler.close()


if __name__ == "__main__":
    unittest.main()
