import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from plates_lexer import Lexer, PlatesParseError
from plates_parser import (
    DIALECT_STACK,
    CallIf,
    DuplicateFunctionName,
    Exit,
    Parser,
    PushArgument,
    PushDuplicate,
    PushFunction,
    PushInteger,
    PushRandom,
    describe,
)


def parse(source, dialect="named"):
    tokens = Lexer(source, "<string>").tokenize()
    return Parser(tokens, "<string>", source.splitlines(), dialect=dialect).parse()


class TestParser(unittest.TestCase):

    def test_push_variants(self):
        program = parse("PUSH 123 PUSH foo PUSH * PUSH ^ CALLIF EXIT")
        statements = program.statements
        self.assertIsInstance(statements[0], PushInteger)
        self.assertEqual(statements[0].value, 123)
        self.assertIsInstance(statements[1], PushFunction)
        self.assertEqual(statements[1].name, "foo")
        self.assertIsInstance(statements[2], PushRandom)
        self.assertIsInstance(statements[3], PushDuplicate)
        self.assertIsInstance(statements[4], CallIf)
        self.assertIsInstance(statements[5], Exit)
        self.assertEqual(program.functions, {})

    def test_define(self):
        program = parse("DEFN swap (2) { PUSH $0 PUSH $1 }")
        self.assertEqual(program.statements, [])
        function = program.functions["swap"]
        self.assertEqual(function.name, "swap")
        self.assertEqual(function.param_count, 2)
        self.assertEqual([type(s) for s in function.body], [PushArgument, PushArgument])
        self.assertEqual([s.index for s in function.body], [0, 1])

    def test_define_without_signature(self):
        program = parse("DEFN noop { }\nDEFN empty (0) { }")
        self.assertEqual(program.functions["noop"].param_count, 0)
        self.assertEqual(program.functions["noop"].body, ())
        self.assertEqual(program.functions["empty"].param_count, 0)

    def test_definitions_are_hoisted(self):
        program = parse("PUSH later PUSH 1 CALLIF\nDEFN later { EXIT }")
        self.assertEqual(len(program.statements), 3)
        self.assertIn("later", program.functions)

    def test_function_table_is_read_only(self):
        program = parse("DEFN f { }")
        with self.assertRaises(TypeError):
            program.functions["g"] = program.functions["f"]

    def test_locations(self):
        program = parse("PUSH 1\n  CALLIF")
        call = program.statements[1]
        self.assertEqual((call.location.line, call.location.column), (2, 3))
        self.assertEqual(call.location.statement, "CALLIF")
        self.assertEqual(call.location.file, "<string>")

    def test_describe(self):
        program = parse("DEFN f (1) { PUSH $0 } PUSH 7 PUSH f PUSH * PUSH ^ CALLIF EXIT")
        rendered = [describe(s) for s in program.statements]
        self.assertEqual(rendered, ["PUSH 7", "PUSH f", "PUSH *", "PUSH ^", "CALLIF", "EXIT"])
        self.assertEqual(describe(program.functions["f"].body[0]), "PUSH $0")

    def test_duplicate_function(self):
        with self.assertRaises(DuplicateFunctionName) as ctx:
            parse("DEFN f { }\nDEFN f { }")
        self.assertEqual(ctx.exception.line, 2)
        self.assertEqual(ctx.exception.kind, "DuplicateFunctionName")

    def test_errors(self):
        should_raise = [
            "DEFN foo { DEFN bar { } }",      # nested definition
            "{",                              # stray brace
            "}",                              # unmatched closing brace
            "PUSH )",                         # bad operand
            "PUSH",                           # eof after PUSH
            "DEFN",                           # eof after DEFN
            "DEFN 42 { }",                    # name must be an identifier
            "DEFN foo *",                     # bad signature
            "DEFN foo ( PUSH",                # bad parameter count
            "DEFN foo (0 }",                  # missing ')'
            "DEFN foo (0) (",                 # missing '{'
            "DEFN foo (0)",                   # eof in signature
            "DEFN foo (0) { PUSH 1",          # eof in body
            "DEFN __mine { }",                # reserved prefix
            "PUSH $0",                        # parameter outside a function
            "DEFN foo (1) { PUSH $1 }",       # parameter out of range
            "DEFN foo { PUSH $0 }",           # no parameters declared
            "CALLIF EXIT PUSH PUSH",          # keyword as operand
        ]
        for case in should_raise:
            self.assertRaises(PlatesParseError, parse, case)

    def test_error_messages(self):
        with self.assertRaises(PlatesParseError) as ctx:
            parse("DEFN foo (0) {\n  PUSH 1\n")
        self.assertIn("Unexpected end of file in body of function 'foo'", str(ctx.exception))

        with self.assertRaises(PlatesParseError) as ctx:
            parse("DEFN __empty { }")
        self.assertIn("reserved for built-in functions", str(ctx.exception))

        with self.assertRaises(PlatesParseError) as ctx:
            parse("PUSH 1\n}")
        self.assertIn("Unmatched '}'", str(ctx.exception))
        self.assertEqual((ctx.exception.line, ctx.exception.column), (2, 1))

    def test_stack_dialect(self):
        program = parse("DEFN f { PUSH ^ } DEFN g (0) { }", dialect=DIALECT_STACK)
        self.assertEqual(set(program.functions), {"f", "g"})
        self.assertRaises(PlatesParseError, parse, "DEFN f (1) { }", dialect=DIALECT_STACK)
        self.assertRaises(PlatesParseError, parse, "DEFN f { PUSH $0 }", dialect=DIALECT_STACK)

    def test_unknown_dialect(self):
        self.assertRaises(ValueError, parse, "EXIT", dialect="reverse")


if __name__ == '__main__':
    unittest.main()
