from __future__ import annotations

import contextlib
import io
import sys
import unittest
from pathlib import Path
from unittest import mock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
import main as cli  # noqa: E402
from database import Base, Person, upsert_policy  # noqa: E402


class CommandLineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        with self.SessionLocal() as session:
            session.add_all([Person(display_name=name) for name in ("Avery", "Blake", "Casey")])
            session.commit()
            upsert_policy(
                session,
                "CLI",
                {"weekly_duty": {"window_weeks": 3}, "on_call": {"window_weeks": 1}},
                edited_by="tests",
            )
        patches = [
            mock.patch.object(database, "SessionLocal", self.SessionLocal),
            mock.patch.object(cli, "init_database"),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self) -> None:
        self.engine.dispose()

    def _run(self, *argv: str):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = cli.main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_show_prints_daily_rota(self) -> None:
        code, out, _ = self._run("show", "2024-01-08")

        self.assertEqual(code, 0)
        self.assertIn("gate      main=Avery backup=Blake", out)
        self.assertIn("2024 W02", out)

    def test_on_call_lists_week(self) -> None:
        code, out, _ = self._run("on-call", "2024-01-08")

        self.assertEqual(code, 0)
        self.assertIn("mon 2024-01-08: Avery", out)

    def test_validate_exit_code(self) -> None:
        self._run("ensure", "2024-01-08")

        code, out, _ = self._run("validate", "2024-01-08")

        self.assertEqual(code, 0)
        self.assertIn("[pass]", out)

    def test_rota_errors_are_reported(self) -> None:
        code, _, err = self._run("override-week", "--week", "2024-01-08", "--person", "1", "--reason", " ")

        self.assertEqual(code, 2)
        self.assertIn("[rota][error]", err)


if __name__ == "__main__":
    unittest.main()
