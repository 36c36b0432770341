#!/usr/bin/env python3
"""
Command-line Interface Integration Tests

Every invocation builds a fresh service on a shared in-memory store, the
same way consecutive CLI runs share a data file.
"""

import io
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout, redirect_stderr

from tmparking.main import main, build_parser, settings_from_args
from tmparking.infrastructure.config import AppSettings

from . import make_memory_store


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.store = make_memory_store()
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *argv, store=None):
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = main(list(argv), store=store or self.store)
        return code, stdout.getvalue(), stderr.getvalue()

    def test_status(self):
        code, out, _ = self.run_cli("status")
        self.assertEqual(code, 0)
        self.assertIn("TM Parking: 0/30 occupied (0%)", out)
        self.assertIn("V-30", out)

    def test_enter_prints_ticket(self):
        code, out, _ = self.run_cli("enter", "7", "abc1d23", "--model", "Onix")
        self.assertEqual(code, 0)
        self.assertIn("ENTRY TICKET", out)
        self.assertIn("ABC1D23", out)
        self.assertIn("Onix", out)

        _, out, _ = self.run_cli("status")
        self.assertIn("1/30 occupied", out)

    def test_enter_errors(self):
        self.run_cli("enter", "7", "ABC1D23")

        code, _, err = self.run_cli("enter", "7", "XYZ9876")
        self.assertEqual(code, 1)
        self.assertIn("already occupied", err)

        code, _, err = self.run_cli("enter", "8", "AB-12")
        self.assertEqual(code, 1)
        self.assertIn("letters and digits", err)

        code, _, err = self.run_cli("enter", "8", "TOOLONGPLATE")
        self.assertEqual(code, 1)
        self.assertIn("Invalid input", err)

    def test_quote_and_exit(self):
        self.run_cli("enter", "7", "ABC1D23")

        code, out, _ = self.run_cli("quote", "7")
        self.assertEqual(code, 0)
        self.assertIn("ABC1D23 in V-7", out)
        self.assertIn("Minimum: 10.00", out)

        code, out, _ = self.run_cli("exit", "7", "--payment", "PIX")
        self.assertEqual(code, 0)
        self.assertIn("PAYMENT RECEIPT", out)
        self.assertIn("R$ 10.00", out)
        self.assertIn("PIX", out)

        code, _, err = self.run_cli("quote", "7")
        self.assertEqual(code, 1)
        self.assertIn("free", err)

    def test_exit_with_amount(self):
        self.run_cli("enter", "7", "ABC1D23")

        code, _, err = self.run_cli("exit", "7", "--amount", "abc")
        self.assertEqual(code, 1)
        self.assertIn("Invalid input", err)

        code, _, err = self.run_cli("exit", "7", "--amount", "1e30")
        self.assertEqual(code, 1)
        self.assertIn("out of range", err)

        code, out, _ = self.run_cli("exit", "7", "--amount", "7.5")
        self.assertEqual(code, 0)
        self.assertIn("R$ 7.50", out)

        _, out, _ = self.run_cli("summary")
        self.assertIn("Income:  7.50", out)
        self.assertIn("PARKING", out)

    def test_narrow_receipt(self):
        _, out, _ = self.run_cli("--printer-width", "58mm", "enter", "7", "ABC1D23")
        for line in out.splitlines():
            self.assertLessEqual(len(line), 32)

    def test_resize(self):
        code, out, _ = self.run_cli("resize", "32")
        self.assertEqual(code, 0)
        self.assertIn("Spots: 32 (0 occupied)", out)

        self.run_cli("enter", "32", "ABC1D23")
        code, _, err = self.run_cli("resize", "20")
        self.assertEqual(code, 1)
        self.assertIn("32", err)

    def test_rate(self):
        code, out, _ = self.run_cli("rate", "MOTO", "--first-hour", "6", "--tolerance", "10")
        self.assertEqual(code, 0)
        self.assertIn("MOTO: 6.00 / 3.00 / 10 min", out)

        code, _, err = self.run_cli("rate", "MOTO")
        self.assertEqual(code, 1)
        self.assertIn("Nothing to update", err)

    def test_late(self):
        code, out, _ = self.run_cli("late")
        self.assertEqual(code, 0)
        self.assertIn("No late subscribers", out)

    def test_backup_and_restore(self):
        path = os.path.join(self.temp_dir, "backup.json")
        self.run_cli("enter", "7", "ABC1D23")
        self.assertEqual(self.run_cli("backup", "--output", path)[0], 0)

        other = make_memory_store()
        code, out, _ = self.run_cli("restore", path, store=other)
        self.assertEqual(code, 0)
        self.assertIn("Backup restored: 30 spots, 1 occupied", out)

        bad = os.path.join(self.temp_dir, "bad.json")
        with open(bad, "w", encoding="utf-8") as handle:
            handle.write("[1, 2, 3]")
        code, _, err = self.run_cli("restore", bad, store=other)
        self.assertEqual(code, 1)
        self.assertIn("JSON object", err)

    def test_missing_restore_file(self):
        code, _, err = self.run_cli("restore", os.path.join(self.temp_dir, "missing.json"))
        self.assertEqual(code, 1)
        self.assertIn("Error:", err)

    def test_unknown_choice_exits(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                main(["enter", "7", "ABC1D23", "--category", "BUS"], store=self.store)


class TestSettingsFromArgs(unittest.TestCase):

    def test_overrides(self):
        args = build_parser().parse_args(["--backend", "sqlalchemy", "--database-url", "sqlite:///x.db", "status"])
        settings = settings_from_args(args, base=AppSettings(company_name="Lot 9"))
        self.assertEqual(settings.storage_backend, "sqlalchemy")
        self.assertEqual(settings.database_url, "sqlite:///x.db")
        self.assertEqual(settings.company_name, "Lot 9")


if __name__ == '__main__':
    unittest.main()
