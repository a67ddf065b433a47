import os
import sys
import tempfile
import unittest
from pathlib import Path
from subprocess import PIPE, run

from sample_corpus import EXPECTED_TRAPS, with_header, write_corpus


REPO_ROOT = Path(__file__).resolve().parents[1]


def svcgen(*args):
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(REPO_ROOT), env.get("PYTHONPATH")) if p)
    return run([sys.executable, "-m", "svcgen", *map(str, args)],
               stdout=PIPE, stderr=PIPE, text=True, env=env, cwd=str(REPO_ROOT))


class TestCli(unittest.TestCase):
    def test_generates_header(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            src = write_corpus(root)
            out = root / "build" / "nrf_svc_stubs.h"
            r = svcgen(src, out)
            self.assertEqual(r.returncode, 0, r.stderr)
            self.assertTrue(out.exists())
            self.assertIn("Scanning 4 headers", r.stdout)
            self.assertIn(f"Wrote {out}", r.stdout)
            text = out.read_text(encoding="utf-8")
            self.assertIn("#ifndef NRF_SVC_STUBS_H", text)
            self.assertEqual(text.count('"svc #0x'), len(EXPECTED_TRAPS))

    def test_quiet(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            r = svcgen(write_corpus(root), root / "out.h", "-q")
            self.assertEqual(r.returncode, 0, r.stderr)
            self.assertEqual(r.stdout, "")

    def test_options(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            preamble = root / "LICENSE.txt"
            preamble.write_text("/* Copyright (c) Nordic Semiconductor ASA */\n",
                                encoding="utf-8")
            out = root / "out.h"
            r = svcgen(write_corpus(root), out, "-q", "--guard", "SD_SVC_H",
                       "--preamble", preamble, "--no-comments")
            self.assertEqual(r.returncode, 0, r.stderr)
            text = out.read_text(encoding="utf-8")
            self.assertTrue(text.startswith("/* Copyright (c) Nordic Semiconductor ASA */\n"))
            self.assertIn("#define SD_SVC_H", text)
            self.assertNotIn("@brief", text)

    def test_dump_plan(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            r = svcgen(write_corpus(root), root / "out.h", "-q", "--dump-plan")
            self.assertEqual(r.returncode, 0, r.stderr)
            lines = r.stdout.splitlines()
            self.assertEqual(len(lines), len(EXPECTED_TRAPS))
            enable = next(l for l in lines if l.startswith("sd_ble_enable "))
            self.assertIn("svc 0x60", enable)
            self.assertIn("r0=p_app_ram_base(reference)", enable)

    def test_malformed_corpus(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            src = write_corpus(root, with_header(
                "bad.h", '#include "nrf_svc.h"\nSVCALL(SD_NOWHERE, uint32_t, sd_bad(void));\n'))
            out = root / "out.h"
            r = svcgen(src, out)
            self.assertEqual(r.returncode, 1)
            self.assertIn("ERROR: MalformedDeclaration:", r.stderr)
            self.assertIn("sd_bad", r.stderr)
            self.assertFalse(out.exists())

    def test_excluded_header_override(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            r = svcgen(write_corpus(root), root / "out.h", "-q", "--exclude", "none.h")
            self.assertEqual(r.returncode, 1)
            self.assertIn("nrf_nvic.h", r.stderr)

    def test_register_pressure(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            src = write_corpus(root, with_header(
                "wide.h",
                '#include <stdint.h>\n#include "nrf_svc.h"\n'
                "SVCALL(0x70, uint32_t, sd_wide(uint32_t a, uint64_t b, uint64_t c));\n"))
            r = svcgen(src, root / "out.h", "-q")
            self.assertEqual(r.returncode, 1)
            self.assertIn("ERROR: RegisterPressureExceeded:", r.stderr)
            self.assertIn("sd_wide", r.stderr)

    def test_missing_source_dir(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            r = svcgen(root / "missing", root / "out.h")
            self.assertEqual(r.returncode, 1)
            self.assertIn("ERROR: MalformedDeclaration:", r.stderr)

    def test_missing_preamble(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            r = svcgen(write_corpus(root), root / "out.h", "--preamble", root / "nope.txt")
            self.assertEqual(r.returncode, 1)
            self.assertIn("ERROR:", r.stderr)


if __name__ == "__main__":
    unittest.main()
