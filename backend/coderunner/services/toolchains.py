import re
from dataclasses import dataclass
from pathlib import Path

from coderunner.core.config import Settings, get_settings
from coderunner.core.errors import UnsupportedLanguageError

# Printed by wrapped input functions right before they block on stdin.
INPUT_MARKER = "<<<INPUT>>>"


@dataclass
class PreparedProgram:
    run: list[str]
    check: list[str] | None = None
    check_timeout: float = 30.0
    failure_label: str = ""
    compiled_notice: str | None = None
    line_offset: int = 0
    source_name: str = ""

    def clean_error(self, text: str) -> str:
        if not self.line_offset or not self.source_name:
            return text
        pattern = re.compile(rf'File "[^"]*{re.escape(self.source_name)}", line (\d+)')
        return pattern.sub(
            lambda m: f"Line {max(1, int(m.group(1)) - self.line_offset)}", text
        )


def split_directives(code: str, prefixes: tuple[str, ...]) -> tuple[list[str], str]:
    directives, rest = [], []
    for line in code.split("\n"):
        if line.strip().startswith(prefixes):
            directives.append(line)
        else:
            rest.append(line)
    return directives, "\n".join(rest)


def extract_java_class_name(code: str) -> str:
    match = re.search(r"class\s+(\w+)\s*\{.*public\s+static\s+void\s+main", code, re.S)
    if match:
        return match.group(1)
    match = re.search(r"public\s+class\s+(\w+)", code)
    if match:
        return match.group(1)
    match = re.search(r"class\s+(\w+)", code)
    if match:
        return match.group(1)
    return "Main"


class Toolchain:
    name = ""
    label = ""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def prepare(self, code: str, workdir: Path) -> PreparedProgram:
        raise NotImplementedError


PYTHON_WRAPPER = '''\
import sys as __cr_sys
import builtins as __cr_builtins

__cr_lines = [0]
__cr_max = {max_iterations}
__cr_file = __file__


def __cr_trace(frame, event, arg):
    if frame.f_code.co_filename != __cr_file:
        return None
    if event == "line":
        __cr_lines[0] += 1
        if __cr_lines[0] > __cr_max:
            __cr_sys.settrace(None)
            print(
                f"\\n[Execution limit reached: Maximum {{__cr_max}} iterations exceeded]",
                file=__cr_sys.stderr,
                flush=True,
            )
            __cr_sys.exit(0)
    return __cr_trace


def __cr_input(prompt=""):
    if prompt:
        __cr_sys.stdout.write(str(prompt))
    __cr_sys.stdout.write("{marker}")
    __cr_sys.stdout.flush()
    line = __cr_sys.stdin.readline()
    if not line:
        raise EOFError("EOF when reading a line")
    return line.rstrip("\\n")


__cr_builtins.input = __cr_input
__cr_sys.settrace(__cr_trace)
__cr_sys._getframe().f_trace = __cr_trace
'''


class PythonToolchain(Toolchain):
    name = "python"
    label = "Python"

    def prepare(self, code, workdir):
        wrapper = PYTHON_WRAPPER.format(
            max_iterations=self.settings.MAX_ITERATIONS, marker=INPUT_MARKER
        )
        script = workdir / "main.py"
        script.write_text(wrapper + "\n" + code, encoding="utf-8")
        return PreparedProgram(
            run=[self.settings.PYTHON_BIN, "-u", str(script)],
            check=[self.settings.PYTHON_BIN, "-m", "py_compile", str(script)],
            check_timeout=self.settings.SYNTAX_CHECK_TIMEOUT_S,
            failure_label="Python syntax error",
            line_offset=wrapper.count("\n") + 1,
            source_name="main.py",
        )


class JavaScriptToolchain(Toolchain):
    name = "javascript"
    label = "JavaScript"

    def prepare(self, code, workdir):
        script = workdir / "main.js"
        script.write_text(code, encoding="utf-8")
        return PreparedProgram(
            run=[self.settings.NODE_BIN, str(script)],
            check=[self.settings.NODE_BIN, "--check", str(script)],
            check_timeout=self.settings.SYNTAX_CHECK_TIMEOUT_S,
            failure_label="JavaScript syntax error",
        )


C_WRAPPER = r"""
#include <stdio.h>
#include <stdlib.h>
#include <string.h>
#include <stdarg.h>

static char *__cr_read_line(void) {
  printf("%s", "MARKER");
  fflush(stdout);
  char *line = malloc(1024);
  if (line == NULL) return NULL;
  if (fgets(line, 1024, stdin) != NULL) {
    size_t len = strlen(line);
    if (len > 0 && line[len - 1] == '\n') line[len - 1] = '\0';
    return line;
  }
  free(line);
  return NULL;
}

static int __cr_scanf(const char *format, ...) {
  va_list args;
  char *input = __cr_read_line();
  if (input == NULL) return EOF;
  va_start(args, format);
  int result = vsscanf(input, format, args);
  va_end(args);
  free(input);
  return result;
}

#define scanf __cr_scanf
""".replace("MARKER", INPUT_MARKER)


class CToolchain(Toolchain):
    name = "c"
    label = "C"

    def prepare(self, code, workdir):
        includes, body = split_directives(code, ("#include", "#define", "#pragma"))
        source = workdir / "main.c"
        binary = workdir / "main"
        source.write_text("\n".join(includes) + "\n" + C_WRAPPER + "\n" + body, encoding="utf-8")
        return PreparedProgram(
            run=[str(binary)],
            check=[self.settings.CC_BIN, str(source), "-o", str(binary), "-std=c99", "-lm"],
            check_timeout=self.settings.COMPILE_TIMEOUT_S,
            failure_label="C compilation error",
            compiled_notice="C compilation successful!\n",
        )


class CppToolchain(Toolchain):
    name = "cpp"
    label = "C++"

    def prepare(self, code, workdir):
        source = workdir / "main.cpp"
        binary = workdir / "main"
        source.write_text(code, encoding="utf-8")
        return PreparedProgram(
            run=[str(binary)],
            check=[self.settings.CXX_BIN, "-O2", "-std=c++17", str(source), "-o", str(binary)],
            check_timeout=self.settings.COMPILE_TIMEOUT_S,
            failure_label="C++ compilation error",
            compiled_notice="C++ compilation successful!\n",
        )


class JavaToolchain(Toolchain):
    name = "java"
    label = "Java"

    def prepare(self, code, workdir):
        class_name = extract_java_class_name(code)
        source = workdir / f"{class_name}.java"
        source.write_text(code, encoding="utf-8")
        return PreparedProgram(
            run=[self.settings.JAVA_BIN, "-cp", str(workdir), class_name],
            check=[self.settings.JAVAC_BIN, str(source)],
            check_timeout=self.settings.COMPILE_TIMEOUT_S,
            failure_label="Java compilation error",
            compiled_notice="Java compilation successful!\n",
        )


TOOLCHAINS = {
    t.name: t
    for t in (PythonToolchain, JavaScriptToolchain, CToolchain, CppToolchain, JavaToolchain)
}
ALIASES = {"node": "javascript", "js": "javascript", "c++": "cpp", "py": "python"}


def get_toolchain(language: str, settings: Settings | None = None) -> Toolchain:
    key = (language or "").strip().lower()
    key = ALIASES.get(key, key)
    if key not in TOOLCHAINS:
        raise UnsupportedLanguageError(language)
    return TOOLCHAINS[key](settings)
