from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class CLIIntegrationTests(unittest.TestCase):
    def run_cli(self, args, *, expect: int | None = 0, cwd: Path | None = None):
        cmd = [sys.executable, "-m", "succession.cli"] + list(args)
        env = os.environ.copy()
        repo_root = Path(__file__).resolve().parent
        existing = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = str(repo_root) if not existing else f"{repo_root}{os.pathsep}{existing}"
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
        if expect is not None and proc.returncode != expect:
            raise AssertionError(
                f"CLI exited {proc.returncode}, expected {expect}\nCommand: {' '.join(cmd)}\nSTDOUT:\n{proc.stdout}\nSTDERR:\n{proc.stderr}"
            )
        return proc

    def new_registry(self) -> Path:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        reg = Path(tmp.name) / "registry"
        self.run_cli(["new", str(reg), "--hash", "blake2b"])
        return reg

    def test_new_make_show(self):
        reg = self.new_registry()
        self.assertTrue((reg / "registry.yaml").exists())

        make = self.run_cli(["make", "-i", str(reg)])
        self.assertIn("Records: 3 created, 0 updated, 0 unchanged, 0 failed", make.stdout)
        self.assertIn("/about", make.stdout)

        show = self.run_cli(["show", "-i", str(reg), "about"])
        self.assertIn("Record: /about", show.stdout)
        self.assertIn("content_type: text/plain", show.stdout)
        self.assertIn("Revision 0", show.stdout)

        raw = self.run_cli(["show", "-i", str(reg), "about", "--raw"])
        self.assertEqual(raw.stdout, "Describe the registry here.\n")

        again = self.run_cli(["make", "-i", str(reg)])
        self.assertIn("0 created, 0 updated, 3 unchanged", again.stdout)

        (reg / "root" / "about" / "data.txt").write_text("New text.\n", encoding="utf-8")
        updated = self.run_cli(["--quiet", "make", "-i", str(reg), "--jobs", "2"])
        self.assertIn("0 created, 1 updated, 2 unchanged", updated.stdout)
        self.assertNotIn("/about", updated.stdout)

        history = self.run_cli(["show", "-i", str(reg), "about", "--history"])
        self.assertIn("Revision 0", history.stdout)
        self.assertIn("Revision 1", history.stdout)

    def test_show_missing_record(self):
        reg = self.new_registry()
        self.run_cli(["make", "-i", str(reg)])
        proc = self.run_cli(["show", "-i", str(reg), "nothing"], expect=1)
        self.assertIn("no record at /nothing", proc.stderr)

    def test_new_refuses_non_empty_directory(self):
        reg = self.new_registry()
        proc = self.run_cli(["new", str(reg)], expect=2)
        self.assertTrue(proc.stderr.startswith("Error:"))
        self.run_cli(["new", str(reg), "--force", "--hash", "blake2b"])

    def test_recover_and_gc(self):
        reg = self.new_registry()
        self.run_cli(["make", "-i", str(reg)])
        recover = self.run_cli(["recover", "-i", str(reg)])
        self.assertIn("Recovery: 0 resumed, 0 rolled back, 0 discarded", recover.stdout)
        gc = self.run_cli(["gc", "-i", str(reg)])
        self.assertIn("Removed 0 unreferenced fragments", gc.stdout)

    def test_ambiguous_data_files_abort_make(self):
        reg = self.new_registry()
        bad = reg / "root" / "broken"
        bad.mkdir()
        (bad / "data.txt").write_text("one")
        (bad / "data.md").write_text("two")
        proc = self.run_cli(["make", "-i", str(reg), "--best-effort"], expect=2)
        self.assertIn("multiple data files", proc.stderr)

    def test_named_root_record_is_rejected(self):
        reg = self.new_registry()
        (reg / "root" / "record.yaml").write_text("name: foo\n", encoding="utf-8")
        proc = self.run_cli(["make", "-i", str(reg)], expect=2)
        self.assertIn("root record must be unnamed", proc.stderr)

    def test_missing_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            proc = self.run_cli(["make", "-i", tmp], expect=2)
            self.assertIn("registry config not found", proc.stderr)


if __name__ == "__main__":
    unittest.main()
