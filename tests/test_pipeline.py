import contextlib
import io
import unittest

from clang import cindex

import matchlint
from fakes import FakeDiagnostic, FakeParser, FixedFlags


def build_pipeline(parser, flags=None, *, verbose=False):
    options = matchlint.ToolOptions(verbose=verbose)
    registry = matchlint.PatternRegistry()
    registry.register(
        matchlint.Pattern.build("CALL_EXPR"),
        lambda node, context: context.report(f"call to {node.spelling}"),
        check_id="calls",
    )
    return matchlint.FilePipeline(
        options,
        registry,
        flags_lookup=flags or FixedFlags(["-Iinclude"]),
        parser=parser,
    )


class FilePipelineTests(unittest.TestCase):
    def test_completed_file_collects_findings(self) -> None:
        parser = FakeParser()
        result = build_pipeline(parser).run("a.c")
        self.assertEqual(result.state, "Completed")
        self.assertIsNone(result.failure)
        self.assertEqual([f.message for f in result.findings], ["call to helper"] * 3)
        self.assertEqual(result.flags, ("-Iinclude",))
        self.assertEqual(parser.calls, [("a.c", ["-Iinclude"])])

    def test_missing_build_config_never_parses(self) -> None:
        parser = FakeParser()
        result = build_pipeline(parser, FixedFlags(missing=["a.c"])).run("a.c")
        self.assertEqual(result.state, "ParseFailed")
        self.assertEqual(result.failure.reason, "NoBuildConfig")
        self.assertEqual(result.findings, [])
        self.assertEqual(parser.calls, [])

    def test_parse_error_is_recorded(self) -> None:
        result = build_pipeline(FakeParser(fail=["a.c"])).run("a.c")
        self.assertEqual(result.state, "ParseFailed")
        self.assertEqual(result.failure, matchlint.ParseFailure("a.c", "FatalParseError", "could not parse 'a.c'"))
        self.assertEqual(result.findings, [])

    def test_fatal_diagnostic_fails_the_file(self) -> None:
        parser = FakeParser(diagnostics={"a.c": [FakeDiagnostic(cindex.Diagnostic.Fatal, "'x.h' file not found")]})
        result = build_pipeline(parser).run("a.c")
        self.assertEqual(result.state, "ParseFailed")
        self.assertEqual(result.failure.reason, "FatalParseError")
        self.assertNotIn("x.h", result.failure.detail)
        self.assertEqual(result.findings, [])

    def test_diagnostics_never_reach_output(self) -> None:
        noisy = [
            FakeDiagnostic(cindex.Diagnostic.Warning, "NOISY-WARNING"),
            FakeDiagnostic(cindex.Diagnostic.Error, "NOISY-ERROR"),
            FakeDiagnostic(cindex.Diagnostic.Note, "NOISY-NOTE"),
        ]
        parser = FakeParser(diagnostics={"a.c": noisy})
        stdout, stderr = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            result = build_pipeline(parser, verbose=True).run("a.c")
            report = matchlint.BatchReport(results=[result])
            matchlint.emit_report_text(report, stdout, stderr, verbose=True)

        self.assertEqual(result.state, "Completed")
        self.assertEqual(result.suppressed_diagnostics, 3)
        output = stdout.getvalue() + stderr.getvalue()
        self.assertNotIn("NOISY", output)
        self.assertIn("call to helper", stdout.getvalue())


if __name__ == "__main__":
    unittest.main()
