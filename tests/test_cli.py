from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from digestq.cli import build_parser, main


class CliTest(unittest.TestCase):
    def test_enqueue_arguments(self) -> None:
        parser = build_parser()
        args = parser.parse_args(
            [
                "--config",
                "digestq.yaml",
                "enqueue",
                "--type",
                "cleanup",
                "--priority",
                "urgent",
                "--tag",
                "a",
                "--tag",
                "b",
            ]
        )
        self.assertEqual(args.command, "enqueue")
        self.assertEqual(args.job_type, "cleanup")
        self.assertEqual(args.priority, "urgent")
        self.assertEqual(args.tag, ["a", "b"])
        self.assertEqual(args.payload, "{}")

    def test_retry_force_flag(self) -> None:
        args = build_parser().parse_args(["--config", "digestq.yaml", "retry", "--job-id", "job_1", "--force"])
        self.assertEqual(args.command, "retry")
        self.assertTrue(args.force)


class CliCommandsTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        self.config_path = Path(self._temp.name) / "digestq.yaml"
        self.config_path.write_text('paths:\n  db: "./state/digestq.db"\n  log: "./state/digestq.log"\n', encoding="utf-8")

    def tearDown(self) -> None:
        self._temp.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        out, err = StringIO(), StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(["--config", str(self.config_path), *argv])
        return code, out.getvalue(), err.getvalue()

    def test_enqueue_list_cancel(self) -> None:
        code, out, _ = self.run_cli(
            "enqueue", "--type", "cleanup", "--payload", '{"target_table": "jobs", "older_than_days": 30}'
        )
        self.assertEqual(code, 0)
        job_id = out.strip()
        self.assertTrue(job_id.startswith("job_"))

        code, out, _ = self.run_cli("jobs", "--status", "pending")
        self.assertEqual(code, 0)
        self.assertIn(job_id, out)
        self.assertIn("status=pending", out)

        code, _, _ = self.run_cli("cancel", "--job-id", job_id)
        self.assertEqual(code, 0)
        code, _, err = self.run_cli("cancel", "--job-id", job_id)
        self.assertEqual(code, 1)
        self.assertIn("already finished", err)

        code, _, err = self.run_cli("retry", "--job-id", job_id)
        self.assertEqual(code, 1)

    def test_errors(self) -> None:
        code, _, err = self.run_cli("enqueue", "--type", "cleanup", "--payload", "{not json")
        self.assertEqual(code, 2)
        self.assertIn("invalid --payload", err)
        code, _, err = self.run_cli("enqueue", "--type", "cleanup", "--payload", '{"target_table": "users"}')
        self.assertEqual(code, 2)
        code, _, err = self.run_cli(
            "enqueue",
            "--type",
            "cleanup",
            "--payload",
            '{"target_table": "jobs", "older_than_days": 30}',
            "--depends-on",
            "job_missing",
        )
        self.assertEqual(code, 2)
        self.assertIn("unresolved dependencies: job_missing", err)
        code, _, err = self.run_cli("cancel", "--job-id", "job_missing")
        self.assertEqual(code, 2)
        self.assertIn("not found", err)

    def test_status(self) -> None:
        code, out, _ = self.run_cli("status")
        self.assertEqual(code, 0)
        self.assertIn("Jobs:", out)
        self.assertIn("Health:", out)


if __name__ == "__main__":
    unittest.main()
