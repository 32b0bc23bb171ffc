from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class TestCLISmoke(unittest.TestCase):
    def test_dry_run_offline_cli(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")

            env = dict(os.environ)
            env.pop("TWTSCRAPE_BEARER_TOKEN", None)

            existing_pp = env.get("PYTHONPATH", "")
            env["PYTHONPATH"] = (
                f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)
            )

            proc = subprocess.run(
                [
                    sys.executable,
                    "-m",
                    "twtscrape",
                    "dry-run",
                    "--config",
                    str(cfg_path),
                    "--offline",
                ],
                cwd=repo_root,
                env=env,
                capture_output=True,
                text=True,
            )

            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("query=user-timeline:offline", proc.stdout)
            self.assertIn("emitted=24", proc.stdout)
            self.assertIn("reason=exhausted", proc.stdout)
            self.assertIn("example_post=", proc.stdout)


if __name__ == "__main__":
    unittest.main()
