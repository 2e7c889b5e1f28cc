from __future__ import annotations

import unittest

from sidejob.errors import ParseError
from sidejob.parser import parse, unparse


class ParseTest(unittest.TestCase):
    def test_literal_init(self) -> None:
        self.assertEqual(
            parse("[A] = q C\n'x' -> p:[A]"),
            {"jobs": {"A": {"queue": "q", "class": "C", "init": {"p": ["x"]}}}},
        )

    def test_definition_with_arguments(self) -> None:
        document = parse("""[Fmt] = web Text::Format.v2 pattern:'%s, %s' sep:"; " mode:fast path:/a/b""")
        self.assertEqual(
            document["jobs"]["Fmt"],
            {
                "queue": "web",
                "class": "Text::Format.v2",
                "args": {"pattern": "%s, %s", "sep": "; ", "mode": "fast", "path": "/a/b"},
            },
        )

    def test_chain_and_split(self) -> None:
        document = parse(
            """
            [A] = q Source
            [B] = q Relay
            [C] = q Sink
            [D] = q Sink
            [A]:out -> in:[B]:out -> in:[C] + other:[D]
            """
        )
        jobs = document["jobs"]
        self.assertEqual(jobs["A"]["connections"], {"out": [{"job": "B", "port": "in"}]})
        self.assertEqual(
            jobs["B"]["connections"],
            {"out": [{"job": "C", "port": "in"}, {"job": "D", "port": "other"}]},
        )
        self.assertNotIn("connections", jobs["C"])

    def test_graph_ports(self) -> None:
        document = parse(
            """
            [A] = q Relay
            [B] = q Relay
            @:in -> in:[A] + in:[B]
            [A]:out -> result:@
            [B]:out -> result:@
            """
        )
        self.assertEqual(document["inports"], {"in": [{"job": "A", "port": "in"}, {"job": "B", "port": "in"}]})
        self.assertEqual(document["outports"], {"result": [{"job": "A", "port": "out"}, {"job": "B", "port": "out"}]})
        self.assertNotIn("connections", document["jobs"]["A"])

    def test_comments_and_escapes(self) -> None:
        document = parse(
            "# header\n"
            "[A] = q C  # trailing\n"
            "'it\\'s # not a comment' -> p:[A]\n"
            "'line\\nbreak' -> p:[A]\n"
        )
        self.assertEqual(document["jobs"]["A"]["init"], {"p": ["it's # not a comment", "line\nbreak"]})

    def test_connection_before_definition(self) -> None:
        document = parse("'x' -> p:[A]\n[A] = q C")
        self.assertEqual(document["jobs"]["A"]["init"], {"p": ["x"]})

    def test_empty_text(self) -> None:
        self.assertEqual(parse(""), {"jobs": {}})
        self.assertEqual(parse("\n  # only a comment\n"), {"jobs": {}})


class ParseErrorTest(unittest.TestCase):
    def assert_parse_error(self, text: str, line: int, fragment: str) -> ParseError:
        with self.assertRaises(ParseError) as ctx:
            parse(text)
        error = ctx.exception
        self.assertEqual(error.line, line)
        self.assertIn(fragment, str(error))
        return error

    def test_duplicate_definition(self) -> None:
        self.assert_parse_error("[A] = q C\n[A] = q D", 2, "A: duplicate definition")

    def test_duplicate_argument(self) -> None:
        self.assert_parse_error("[A] = q C x:1 x:2", 1, "A: argument x duplicated")

    def test_undefined_job(self) -> None:
        self.assert_parse_error("[A] = q C\n[A]:out -> in:[B]", 2, "Undefined job B")

    def test_literal_to_graph_outport(self) -> None:
        self.assert_parse_error("'x' -> out:@", 1, "literal")

    def test_syntax_error_trace(self) -> None:
        error = self.assert_parse_error("[A] = q C\n[A]:out => in:[A]", 2, "expected '->'")
        self.assertEqual(error.column, 8)
        self.assertEqual(error.trace[0]["rule"], "line")
        self.assertEqual(error.trace[-1]["rule"], "connection")
        self.assertEqual(error.trace[-1]["source"], "[A]:out => in:[A]")

    def test_unterminated_literal(self) -> None:
        self.assert_parse_error("[A] = q C\n'oops -> p:[A]", 2, "expected")


class UnparseTest(unittest.TestCase):
    def test_literal_init_round_trip(self) -> None:
        document = parse("[A] = q C\n'x' -> p:[A]")
        text = unparse(document)
        self.assertEqual(text, "[A] = q C\n'x' -> p:[A]\n")
        self.assertEqual(parse(text), document)

    def test_canonical_order(self) -> None:
        document = {
            "jobs": {
                "B": {"queue": "q", "class": "Sink"},
                "A": {
                    "queue": "q",
                    "class": "Source",
                    "args": {"label": "two words"},
                    "connections": {"out": [{"job": "B", "port": "in"}, {"job": "B", "port": "aux"}]},
                },
            },
            "inports": {"start": [{"job": "A", "port": "go"}]},
            "outports": {"done": [{"job": "B", "port": "out"}]},
        }
        self.assertEqual(
            unparse(document),
            "[A] = q Source label:'two words'\n"
            "[B] = q Sink\n"
            "[A]:out -> in:[B] + aux:[B]\n"
            "@:start -> go:[A]\n"
            "[B]:out -> done:@\n",
        )

    def test_round_trip(self) -> None:
        text = """
        [Src] = q Source count:3 note:'a \\'quoted\\' value'
        [Mid] = q Relay
        [Out] = q Sink
        [Src]:out -> in:[Mid]:out -> in:[Out] + log:[Out]
        @:seed -> in:[Src]
        [Out]:out -> result:@
        'first' -> cfg:[Mid]
        'second' -> cfg:[Mid]
        'tab\\there' -> cfg:[Out]
        """
        document = parse(text)
        self.assertEqual(parse(unparse(document)), document)
        self.assertEqual(unparse(parse(unparse(document))), unparse(document))


if __name__ == "__main__":
    unittest.main()
