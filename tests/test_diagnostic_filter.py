import unittest

from clang import cindex

import matchlint
from fakes import FakeDiagnostic


class DiagnosticFilterTests(unittest.TestCase):
    def test_counts_without_keeping_text(self) -> None:
        diag_filter = matchlint.DiagnosticFilter()
        diag_filter.handle(FakeDiagnostic(cindex.Diagnostic.Warning, "unused variable 'x'"))
        diag_filter.handle(FakeDiagnostic(cindex.Diagnostic.Note, "declared here"))
        diag_filter.handle(FakeDiagnostic(cindex.Diagnostic.Error, "use of undeclared identifier"))
        self.assertEqual(diag_filter.discarded, 3)
        self.assertFalse(diag_filter.fatal_seen)
        self.assertNotIn("unused", repr(vars(diag_filter)))

    def test_fatal_is_remembered(self) -> None:
        diag_filter = matchlint.DiagnosticFilter()
        diag_filter.handle(FakeDiagnostic(cindex.Diagnostic.Fatal, "'missing.h' file not found"))
        self.assertTrue(diag_filter.fatal_seen)


if __name__ == "__main__":
    unittest.main()
