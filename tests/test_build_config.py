import os
import tempfile
import unittest

import matchlint


class ParseArgsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        options = matchlint.parse_args(["a.c"], environ={})
        self.assertEqual(options.files, ["a.c"])
        self.assertFalse(options.verbose)
        self.assertIsNone(options.fixed_flags)
        self.assertEqual(options.output_format, "text")
        self.assertFalse(options.include_headers)

    def test_flags_after_double_dash_are_fixed_flags(self) -> None:
        options = matchlint.parse_args(
            ["--verbose", "a.c", "b.cpp", "--", "-Iinclude", "-DDEBUG=1", "--", "x"],
            environ={},
        )
        self.assertEqual(options.files, ["a.c", "b.cpp"])
        self.assertTrue(options.verbose)
        self.assertEqual(options.fixed_flags, ["-Iinclude", "-DDEBUG=1", "--", "x"])

    def test_empty_fixed_flags_are_still_a_configuration(self) -> None:
        options = matchlint.parse_args(["a.c", "--"], environ={})
        self.assertEqual(options.fixed_flags, [])

    def test_environment_args(self) -> None:
        options = matchlint.parse_args(["a.c"], environ={"MATCHLINT_CLANG_ARGS": "-std=c11 '-DNAME=a b'"})
        self.assertEqual(options.env_args, ["-std=c11", "-DNAME=a b"])

    def test_repeatable_options(self) -> None:
        options = matchlint.parse_args(
            ["--checks", "one.yaml", "--checks", "two.yaml", "--extra-arg=-Wall",
             "--extra-arg-before=-xc++", "-p", "build", "--format", "json", "--out", "r.json", "a.c"],
            environ={},
        )
        self.assertEqual(options.check_files, ["one.yaml", "two.yaml"])
        self.assertEqual(options.extra_args, ["-Wall"])
        self.assertEqual(options.extra_args_before, ["-xc++"])
        self.assertEqual(options.build_path, "build")
        self.assertEqual((options.output_format, options.out), ("json", "r.json"))

    def test_files_after_options(self) -> None:
        options = matchlint.parse_args(["a.c", "--verbose", "b.c", "-p", "build", "c.c"], environ={})
        self.assertEqual(options.files, ["a.c", "b.c", "c.c"])
        self.assertTrue(options.verbose)
        self.assertEqual(options.build_path, "build")


class NormalizeCompileCommandTests(unittest.TestCase):
    def test_strips_compiler_source_and_output(self) -> None:
        flags = matchlint.normalize_compile_command(
            ["/usr/bin/cc", "-Iinclude", "-I", "../third_party", "-DX", "-c", "src/a.c", "-o", "a.o", "-O2"],
            "/work/build",
            "src/a.c",
        )
        self.assertEqual(
            flags,
            ["-I/work/build/include", "-I", "/work/third_party", "-DX", "-O2"],
        )

    def test_joined_output_and_absolute_source(self) -> None:
        flags = matchlint.normalize_compile_command(
            ["clang++", "-std=c++17", "-oout.o", "/src/b.cpp", "-isystem", "/opt/inc"],
            "/build",
            "/src/b.cpp",
        )
        self.assertEqual(flags, ["-std=c++17", "-isystem", "/opt/inc"])

    def test_double_dash_before_source_is_dropped(self) -> None:
        flags = matchlint.normalize_compile_command(
            ["cc", "-Iinc", "-c", "--", "b.c"],
            "/work",
            "/work/b.c",
        )
        self.assertEqual(flags, ["-I/work/inc"])


class BuildConfigLookupTests(unittest.TestCase):
    def test_fixed_flags_with_extras_in_order(self) -> None:
        options = matchlint.ToolOptions(
            fixed_flags=["-DMAIN"],
            extra_args=["-Wall"],
            extra_args_before=["-xc"],
            env_args=["-std=c11"],
        )
        lookup = matchlint.BuildConfigLookup(options)
        self.assertEqual(lookup.flags_for("a.c"), ["-xc", "-DMAIN", "-Wall", "-std=c11"])

    def test_no_database_means_no_build_config(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = os.path.join(tmp, "a.c")
            lookup = matchlint.BuildConfigLookup(matchlint.ToolOptions(extra_args=["-Wall"]))
            found = lookup._database_dir(source)
            if found is not None:
                self.skipTest(f"a compile_commands.json exists above the temp dir ({found})")
            self.assertIsNone(lookup.flags_for(source))

    def test_database_is_found_walking_up(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            nested = os.path.join(tmp, "src", "deep")
            os.makedirs(nested)
            with open(os.path.join(tmp, matchlint.COMPILE_DB_NAME), "w", encoding="utf-8") as handle:
                handle.write("[]")
            lookup = matchlint.BuildConfigLookup(matchlint.ToolOptions())
            self.assertEqual(lookup._database_dir(os.path.join(nested, "a.c")), tmp)

    def test_build_path_wins(self) -> None:
        lookup = matchlint.BuildConfigLookup(matchlint.ToolOptions(build_path="out/build"))
        self.assertEqual(lookup._database_dir("/anywhere/a.c"), "out/build")


if __name__ == "__main__":
    unittest.main()
