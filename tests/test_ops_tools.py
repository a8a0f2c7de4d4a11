from __future__ import annotations

import io
import os
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

from ops import check_celery_import
from tools import health_db_probe


class OpsToolsTestCase(unittest.TestCase):
    def test_db_probe_reports_missing_tables(self):
        env = {"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:", "BORROWPAL_ENV": "test", "SENTRY_DSN": ""}
        out = io.StringIO()
        with patch.dict(os.environ, env, clear=False), redirect_stdout(out):
            code = health_db_probe.main()
        self.assertEqual(code, 2)
        self.assertIn("SELECT 1: success", out.getvalue())
        self.assertIn("missing tables: users", out.getvalue())

    def test_celery_import_check(self):
        out = io.StringIO()
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False), redirect_stdout(out):
            code = check_celery_import.main()
        self.assertEqual(code, 0)
        self.assertIn("celery_app:celery import succeeded", out.getvalue())


if __name__ == "__main__":
    unittest.main()
