import os
import shutil
import socket
import sys
import tempfile
import threading
import time
import unittest
from io import StringIO
from unittest.mock import patch, MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import ssh_multipath_proxy
from ssh_multipath_proxy import PollError, RaceCoordinator, RaceState


class TestMain(unittest.TestCase):
    """main() end to end, with exec, setsid and forwarding patched out."""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.test_dir, "config")
        with open(self.config_path, 'w') as f:
            f.write("setsid=no\n")
        self.stderr = StringIO()
        for patcher in (
            patch('sys.stderr', self.stderr),
            patch('os.path.expanduser', return_value=self.config_path),
        ):
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def _main(self, *args):
        with self.assertRaises(SystemExit) as cm:
            ssh_multipath_proxy.main(["ssh-multipath-proxy"] + list(args))
        return cm.exception.code

    def test_no_hosts_prints_usage(self):
        self.assertEqual(self._main(), 1)
        self.assertIn("Usage:", self.stderr.getvalue())

    def test_command_without_host(self):
        self.assertEqual(self._main("--", "nc", "host", "22"), 1)
        self.assertIn("At least one host required even with command", self.stderr.getvalue())

    def test_empty_command(self):
        self.assertEqual(self._main("host", "--"), 1)
        self.assertIn("Command must not be empty", self.stderr.getvalue())

    def test_missing_option_value(self):
        self.assertEqual(self._main("host", "--stagger-delay"), 1)
        self.assertIn("requires a value", self.stderr.getvalue())

    def test_bad_port(self):
        self.assertEqual(self._main("host:notaport"), 1)
        self.assertIn("invalid port", self.stderr.getvalue())

    def test_exhausted_without_fallback_fails(self):
        with patch.object(RaceCoordinator, 'run', return_value=RaceState.EXHAUSTED):
            self.assertEqual(self._main("host1", "host2"), 1)

    def test_fallback_runs_when_exhausted(self):
        with patch.object(RaceCoordinator, 'run', return_value=RaceState.EXHAUSTED):
            with patch('os.execvp', side_effect=SystemExit(0)) as mock_exec:
                self.assertEqual(self._main("host1", "--", "echo", "ok"), 0)
        mock_exec.assert_called_once_with("echo", ["echo", "ok"])
        self.assertIn("Running: echo ok", self.stderr.getvalue())

    def test_failed_fallback_goes_back_to_waiting(self):
        with patch.object(RaceCoordinator, 'run', return_value=RaceState.WAITING):
            with patch.object(RaceCoordinator, 'wait', return_value=RaceState.EXHAUSTED) as mock_wait:
                with patch('os.execvp', side_effect=FileNotFoundError(2, "No such file or directory")):
                    self.assertEqual(self._main("host1", "--", "nosuchcmd"), 1)
        mock_wait.assert_called_once_with()
        self.assertIn("nosuchcmd: No such file or directory", self.stderr.getvalue())

    def test_winner_is_forwarded_with_banner(self):
        winner = MagicMock()

        def fake_run(self, final_delay=None):
            self.winner = winner
            self.state = RaceState.WON
            return RaceState.WON

        with patch.object(RaceCoordinator, 'run', new=fake_run):
            with patch.object(ssh_multipath_proxy, 'forward', return_value=0) as mock_forward:
                self.assertEqual(self._main("--buffer-size", "4096", "host1"), 0)
        mock_forward.assert_called_once_with(winner, 4096)

    def test_poll_error_is_fatal(self):
        with patch.object(RaceCoordinator, 'run', side_effect=PollError("race poll failed")):
            with patch.object(RaceCoordinator, 'close_all') as mock_close:
                self.assertEqual(self._main("host1"), 1)
        mock_close.assert_called()
        self.assertIn("race poll failed", self.stderr.getvalue())

    def test_setsid_on_by_default(self):
        with open(self.config_path, 'w') as f:
            f.write("")
        with patch('os.setsid') as mock_setsid:
            with patch.object(RaceCoordinator, 'run', return_value=RaceState.EXHAUSTED):
                self._main("host1")
        mock_setsid.assert_called_once_with()

    def test_setsid_failure_is_not_fatal(self):
        with open(self.config_path, 'w') as f:
            f.write("")
        with patch('os.setsid', side_effect=PermissionError(1, "Operation not permitted")):
            with patch.object(RaceCoordinator, 'run', return_value=RaceState.EXHAUSTED):
                self.assertEqual(self._main("host1"), 1)
        self.assertIn("setsid(): Operation not permitted", self.stderr.getvalue())

    def test_no_setsid_flag(self):
        with open(self.config_path, 'w') as f:
            f.write("")
        with patch('os.setsid') as mock_setsid:
            with patch.object(RaceCoordinator, 'run', return_value=RaceState.EXHAUSTED):
                self._main("--no-setsid", "host1")
        mock_setsid.assert_not_called()


class TestFallbackScenario(unittest.TestCase):
    """A host answering with junk is dropped and the fallback runs at once."""

    def setUp(self):
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(4)
        self.port = self.server.getsockname()[1]
        self.conns = []
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        for conn in self.conns:
            conn.close()
        self.server.close()
        shutil.rmtree(self.test_dir)

    def _serve(self):
        try:
            conn, _ = self.server.accept()
        except OSError:
            return
        self.conns.append(conn)
        conn.sendall(b"220 smtp.example.com ESMTP\r\n")

    def test_junk_host_then_fallback(self):
        stderr = StringIO()
        argv = ["ssh-multipath-proxy", "--no-setsid", f"127.0.0.1:{self.port}", "--", "echo", "ok"]
        start = time.monotonic()
        with patch('sys.stderr', stderr):
            with patch('os.path.expanduser', return_value=os.path.join(self.test_dir, "config")):
                with patch('os.execvp', side_effect=SystemExit(0)) as mock_exec:
                    with self.assertRaises(SystemExit) as cm:
                        ssh_multipath_proxy.main(argv)
        elapsed = time.monotonic() - start

        self.assertEqual(cm.exception.code, 0)
        mock_exec.assert_called_once_with("echo", ["echo", "ok"])
        self.assertLess(elapsed, 3.0)
        output = stderr.getvalue()
        self.assertIn(f"Discarding: 127.0.0.1:{self.port}", output)
        self.assertIn("Running: echo ok", output)


if __name__ == '__main__':
    unittest.main()
