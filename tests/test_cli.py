import io
import json
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from plates import run_cli

SAMPLES = Path(__file__).parent.parent / "samples"


def invoke(*argv):
    out, err = io.StringIO(), io.StringIO()
    with redirect_stdout(out), redirect_stderr(err):
        code = run_cli(list(argv))
    return code, out.getvalue(), err.getvalue()


class TestCli(unittest.TestCase):

    def test_hello_source(self):
        code, out, err = invoke("-source", "PUSH 72 PUSH 0 PUSH __print__ PUSH 1 CALLIF EXIT")
        self.assertEqual((code, out, err), (0, "H", ""))

    def test_sample_files(self):
        code, out, _ = invoke(str(SAMPLES / "hello.plates"))
        self.assertEqual((code, out), (0, "Hello, world!\n"))
        code, out, _ = invoke(str(SAMPLES / "countdown.plates"))
        self.assertEqual((code, out), (0, "********\n"))

    def test_file_with_utf8(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "smile.plates"
            path.write_text("// é\nPUSH 0 PUSH '☺' PUSH __print__ PUSH 1 CALLIF\n", encoding="utf-8")
            code, out, _ = invoke(str(path))
        self.assertEqual((code, out), (0, "☺"))

    def test_unknown_function(self):
        code, out, err = invoke("-source", "PUSH undefined_fn")
        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertIn("UnknownFunctionReference", err)
        self.assertIn("<string>:1:1", err)

    def test_parse_error(self):
        code, out, err = invoke("-source", "PUSH 0 PUSH 'A' PUSH __print__ PUSH 1 CALLIF\nDEFN f (0 {")
        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertTrue(err.startswith("ParseError: "))
        self.assertIn("<string>:2:11", err)

    def test_lex_error(self):
        code, _, err = invoke("-source", "PUSH 12ab")
        self.assertEqual(code, 1)
        self.assertTrue(err.startswith("LexError: "))
        self.assertIn("<string>:1:6", err)

    def test_runtime_error_traceback(self):
        code, _, err = invoke("-source", "PUSH 1 CALLIF", "--traceback-json")
        self.assertEqual(code, 1)
        self.assertIn("Traceback (most recent call last):", err)
        self.assertIn("StackUnderflow: CALLIF cannot pop from an empty stack", err)
        payload = err[err.index("{"):]
        self.assertEqual(json.loads(payload)["error"]["type"], "StackUnderflow")

    def test_max_depth(self):
        source = "DEFN deep { PUSH deep PUSH 1 CALLIF PUSH 0 } PUSH deep PUSH 1 CALLIF"
        code, _, err = invoke("-source", source, "--max-depth", "10")
        self.assertEqual(code, 1)
        self.assertIn("StackOverflow", err)

    def test_max_steps(self):
        source = "DEFN spin { PUSH spin PUSH 1 CALLIF } PUSH spin PUSH 1 CALLIF"
        code, _, err = invoke("-source", source, "--max-steps", "100")
        self.assertEqual(code, 1)
        self.assertIn("StepLimitExceeded", err)

    def test_seed_is_deterministic(self):
        source = "PUSH 0 PUSH * PUSH * PUSH * PUSH __print__ PUSH 1 CALLIF"
        first = invoke("-source", source, "--seed", "99")
        second = invoke("-source", source, "--seed", "99")
        self.assertEqual(first, second)
        self.assertEqual(first[0], 0)

    def test_debug_trace(self):
        code, out, err = invoke("-source", "PUSH 1 PUSH 2", "-debug")
        self.assertEqual(code, 0)
        self.assertIn("[1, 2]  <-- top", err)

    def test_dialect(self):
        source = "PUSH 1 PUSH 0 PUSH __dup__ PUSH 1 CALLIF"
        self.assertEqual(invoke("-source", source, "--dialect", "stack")[0], 0)
        self.assertEqual(invoke("-source", source)[0], 1)

    def test_missing_file(self):
        code, _, err = invoke("/nonexistent/program.plates")
        self.assertEqual(code, 1)
        self.assertIn("failed to read", err)

    def test_file_not_utf8(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "latin1.plates"
            path.write_bytes(b"PUSH 0 PUSH '\xe9'\n")
            code, out, err = invoke(str(path))
        self.assertEqual((code, out), (1, ""))
        self.assertTrue(err.startswith("IOError: failed to read"))

    def test_max_steps_must_be_positive(self):
        with self.assertRaises(SystemExit) as ctx:
            invoke("-source", "PUSH 1", "--max-steps", "0")
        self.assertEqual(ctx.exception.code, 2)
        self.assertEqual(invoke("-source", "PUSH 1", "--max-steps", "1")[0], 0)


if __name__ == '__main__':
    unittest.main()
