import pytest

from coderunner.core.config import Settings
from coderunner.core.errors import UnsupportedLanguageError
from coderunner.services.toolchains import (
    INPUT_MARKER,
    CToolchain,
    JavaToolchain,
    PreparedProgram,
    PythonToolchain,
    extract_java_class_name,
    get_toolchain,
    split_directives,
)


@pytest.fixture
def settings():
    return Settings(PYTHON_BIN="py3", MAX_ITERATIONS=25, CC_BIN="cc")


@pytest.mark.parametrize(
    "language,expected",
    [("python", "python"), ("PY", "python"), ("node", "javascript"), ("c++", "cpp"), ("Java", "java"), ("c", "c")],
)
def test_lookup_by_name_and_alias(settings, language, expected):
    assert get_toolchain(language, settings).name == expected


def test_unknown_language():
    with pytest.raises(UnsupportedLanguageError, match="Unsupported language: cobol"):
        get_toolchain("cobol")


def test_python_program_is_wrapped(settings, tmp_path):
    program = PythonToolchain(settings).prepare("print('hi')", tmp_path)

    script = (tmp_path / "main.py").read_text()
    assert script.endswith("\nprint('hi')")
    assert INPUT_MARKER in script
    assert "__cr_max = 25" in script
    assert program.run == ["py3", "-u", str(tmp_path / "main.py")]
    assert program.check[:3] == ["py3", "-m", "py_compile"]
    assert program.failure_label == "Python syntax error"
    # user code starts right after the offset
    assert script.split("\n")[program.line_offset] == "print('hi')"


def test_python_error_lines_point_at_user_code(settings, tmp_path):
    program = PythonToolchain(settings).prepare("x = 1\nprint(y)", tmp_path)
    reported = program.line_offset + 2
    text = f'  File "{tmp_path}/main.py", line {reported}, in <module>\nNameError: y'
    assert program.clean_error(text) == "  Line 2, in <module>\nNameError: y"


def test_clean_error_leaves_other_files_alone():
    program = PreparedProgram(run=[], line_offset=10, source_name="main.py")
    text = 'File "/usr/lib/python3/json/decoder.py", line 40'
    assert program.clean_error(text) == text


def test_c_includes_are_hoisted_above_wrapper(settings, tmp_path):
    code = '#include <stdio.h>\nint main(){int n; scanf("%d", &n); printf("%d", n);}'
    program = CToolchain(settings).prepare(code, tmp_path)

    source = (tmp_path / "main.c").read_text()
    assert source.startswith("#include <stdio.h>\n")
    assert source.index("#define scanf __cr_scanf") < source.index("int main()")
    assert INPUT_MARKER in source
    assert program.check[0] == "cc"
    assert program.compiled_notice == "C compilation successful!\n"
    assert program.run == [str(tmp_path / "main")]


def test_split_directives():
    directives, rest = split_directives("#include <a.h>\n  #define X 1\nint x;", ("#include", "#define"))
    assert directives == ["#include <a.h>", "  #define X 1"]
    assert rest == "int x;"


@pytest.mark.parametrize(
    "code,name",
    [
        ("public class Hello { public static void main(String[] a) {} }", "Hello"),
        ("class Helper {}\npublic class App { }", "App"),
        ("class Solo { }", "Solo"),
        ("interface Nothing {}", "Main"),
    ],
)
def test_java_class_name(code, name):
    assert extract_java_class_name(code) == name


def test_java_source_named_after_class(settings, tmp_path):
    program = JavaToolchain(settings).prepare("public class Hello { }", tmp_path)
    assert (tmp_path / "Hello.java").exists()
    assert program.run[-1] == "Hello"
