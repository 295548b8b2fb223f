import os
import time

import pytest

from execengine.errors import CompilationError
from execengine.languages import JavaExecutor, LANGUAGES
from execengine.schemas import ErrorKind, ExecutionRequest
from execengine.executor import evaluate
from tests.conftest import requires, run

HELLO = {
    'python': 'print("OK")',
    'javascript': 'console.log("OK")',
    'typescript': 'const word: string = "OK";\nconsole.log(word);',
    'cpp': '#include <iostream>\nint main(){ std::cout << "OK" << std::endl; return 0; }',
    'java': 'public class Solution { public static void main(String[] a) { System.out.println("OK"); } }',
}

LOOP = {
    'python': 'while True:\n    pass',
    'javascript': 'while (true) {}',
    'cpp': 'int main(){ volatile int x = 0; while (true) { x++; } }',
    'java': 'public class Main { public static void main(String[] a) { while (true) {} } }',
}


def _request(language, code, **kwargs):
    return ExecutionRequest(language=language, code=code, **kwargs)


def test_registry_covers_supported_languages():
    assert set(LANGUAGES) == {'javascript', 'typescript', 'python', 'java', 'cpp'}


def test_python_scenario(dispatcher):
    result = run(dispatcher.execute(_request('python', 'print("OK")', stdin='')))
    assert result.output == 'OK\n'
    assert result.stderr == ''
    assert result.error_kind is None
    assert result.exit_code == 0


def test_python_reads_stdin(dispatcher):
    result = run(dispatcher.execute(_request('python', 'a, b = map(int, input().split())\nprint(a * b)', stdin='6 7\n')))
    assert result.output == '42\n'


def test_python_syntax_error_is_runtime_error(dispatcher):
    request = _request('python', 'def broken(:\n  pass', test_cases=[{'input': '', 'expectedOutput': 'x'}])
    verdict = run(evaluate(request, dispatcher))
    assert verdict.status.value == 'Wrong Answer'
    assert 'SyntaxError' in verdict.results[0].error
    raw = run(dispatcher.execute(_request('python', 'def broken(:\n  pass')))
    assert raw.error_kind is ErrorKind.runtime


def test_javascript_runs_in_process(dispatcher):
    result = run(dispatcher.execute(_request('javascript', HELLO['javascript'])))
    assert result.output == 'OK'
    assert result.memory_kb is None


@pytest.mark.parametrize('expected', ['x', ''])
@pytest.mark.parametrize('language', ['python', 'javascript'])
def test_infinite_loop_is_time_limit_exceeded(dispatcher, settings, language, expected):
    settings.execution_timeout_ms = 1000
    dispatcher.supervisor.timeout_ms = 1000
    request = _request(language, LOOP[language], test_cases=[{'input': '', 'expectedOutput': expected}])
    started = time.monotonic()
    verdict = run(evaluate(request, dispatcher))
    assert time.monotonic() - started < 1.0 + 1.0
    assert verdict.status.value == 'Time Limit Exceeded'


@requires('g++')
def test_cpp_hello(dispatcher):
    assert run(dispatcher.execute(_request('cpp', HELLO['cpp']))).output == 'OK\n'


@requires('g++')
def test_cpp_nonzero_exit_without_output_matches_empty(dispatcher):
    request = _request('cpp', 'int main(){return 1;}', test_cases=[{'input': '', 'expectedOutput': ''}])
    verdict = run(evaluate(request, dispatcher))
    assert verdict.results[0].passed
    assert verdict.status.value == 'Accepted'


@requires('g++')
def test_cpp_syntax_error_attempts_no_cases(dispatcher):
    cases = [{'input': str(i), 'expectedOutput': str(i)} for i in range(5)]
    verdict = run(evaluate(_request('cpp', 'int main( { return 0 }', test_cases=cases), dispatcher))
    assert verdict.status.value == 'Compilation Error'
    assert verdict.results == []
    assert verdict.total_tests == 5
    assert verdict.error


@requires('g++')
def test_cpp_compiles_once_and_cleans_workspace(dispatcher, settings):
    code = '#include <iostream>\nint main(){ long a, b; std::cin >> a >> b; std::cout << a + b; }'
    cases = [{'input': '1 2', 'expectedOutput': '3'}, {'input': '10 20', 'expectedOutput': '30'}]
    verdict = run(evaluate(_request('cpp', code, test_cases=cases), dispatcher))
    assert verdict.status.value == 'Accepted'
    assert os.listdir(settings.workspace_root) == []


@requires('g++')
def test_cpp_infinite_loop(dispatcher, settings):
    settings.execution_timeout_ms = 1000
    dispatcher.supervisor.timeout_ms = 1000
    verdict = run(evaluate(_request('cpp', LOOP['cpp'], test_cases=[{'input': '', 'expectedOutput': ''}]), dispatcher))
    assert verdict.status.value == 'Time Limit Exceeded'


@requires('javac', 'java')
def test_java_hello_uses_public_class_name(dispatcher):
    result = run(dispatcher.execute(_request('java', HELLO['java'])))
    assert result.output.strip() == 'OK'


@requires('javac', 'java')
def test_java_compile_error(dispatcher):
    result = run(dispatcher.execute(_request('java', 'public class Main { void x( }')))
    assert result.error_kind is ErrorKind.compilation
    assert result.stderr


@requires('esbuild')
def test_typescript_transpiles_then_runs(dispatcher):
    assert run(dispatcher.execute(_request('typescript', HELLO['typescript']))).output == 'OK'


@requires('esbuild')
def test_typescript_transpile_failure_is_compilation_error(dispatcher):
    executor = dispatcher.executors['typescript']
    with pytest.raises(CompilationError):
        run(executor.prepare('const x: = ;', None))


@pytest.mark.parametrize('code, expected', [
    ('public class Solution { }', 'Solution'),
    ('public final class Answer {}', 'Answer'),
    ('class Helper {} class Other {}', 'Main'),
    ('class Node { int v; } class Main { public static void main(String[] a) {} }', 'Main'),
    ('class Node {} class Runner { static void main(String... a) {} }', 'Runner'),
    ('public class Graph {} class App { public static void main(String[] a) {} }', 'App'),
    ('interface Nothing {}', 'Main'),
])
def test_java_main_class_detection(code, expected):
    assert JavaExecutor.main_class(code) == expected


def test_java_entry_class_is_run_from_public_class_file(dispatcher, tmp_path):
    executor = dispatcher.executors['java']
    code = 'public class Graph { int n; }\nclass App { public static void main(String[] a) {} }'
    assert executor.source_filename(code) == 'Graph.java'
    source_path = executor.write_source(code, str(tmp_path))
    assert executor.run_command(source_path, str(tmp_path))[-1] == 'App'

    helper_first = 'class Node { Node next; }\nclass Main { public static void main(String[] a) {} }'
    assert executor.source_filename(helper_first) == 'Main.java'


def test_runtime_catalog_matching(dispatcher):
    catalog = [
        {'language': 'c++', 'version': '10.2.0', 'aliases': ['cpp', 'g++']},
        {'language': 'javascript', 'version': '18.15.0', 'aliases': ['node-javascript', 'js']},
        {'language': 'python', 'version': '3.12.0', 'aliases': ['py', 'python3']},
        'junk',
    ]
    assert dispatcher.executors['cpp'].discover_runtime_version(catalog) == '10.2.0'
    assert dispatcher.executors['python'].discover_runtime_version(catalog) == '3.12.0'
    assert dispatcher.executors['java'].discover_runtime_version(catalog) is None
