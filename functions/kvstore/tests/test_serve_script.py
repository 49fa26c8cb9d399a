import unittest
from unittest import mock

from fastapi import FastAPI

from scripts import serve_kv_api


class ServeScriptTests(unittest.TestCase):
    @mock.patch("scripts.serve_kv_api.uvicorn.run")
    def test_runs_app_with_cli_options(self, run):
        exit_code = serve_kv_api.main(["--host", "0.0.0.0", "--port", "9001"])

        self.assertEqual(exit_code, 0)
        run.assert_called_once()
        app = run.call_args.args[0]
        self.assertIsInstance(app, FastAPI)
        self.assertEqual(run.call_args.kwargs["host"], "0.0.0.0")
        self.assertEqual(run.call_args.kwargs["port"], 9001)
        self.assertIn("/api/kv-get", {route.path for route in app.routes})


if __name__ == "__main__":
    unittest.main()
