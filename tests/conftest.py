from __future__ import annotations

from typing import Callable, List

import pytest

from extensions import RuntimeServices, build_default_services
from host import Host
from interpreter import Interpreter
from storage import Value, var_index


class Console:
    """Collects host output and replays scripted input lines."""

    def __init__(self) -> None:
        self.chunks: List[str] = []
        self.inputs: List[str] = []

    def sink(self, text: str) -> None:
        self.chunks.append(text)

    def provide(self) -> str:
        if not self.inputs:
            raise EOFError
        return self.inputs.pop(0)

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    def clear(self) -> None:
        self.chunks.clear()


@pytest.fixture
def console() -> Console:
    return Console()


@pytest.fixture
def host(console: Console) -> Host:
    return Host(output_sink=console.sink, input_provider=console.provide, seed=1234, text_size=(80, 25))


@pytest.fixture
def services() -> RuntimeServices:
    return build_default_services()


@pytest.fixture
def interp(host: Host, services: RuntimeServices) -> Interpreter:
    return Interpreter(host=host, services=services)


@pytest.fixture
def repl(host: Host, services: RuntimeServices) -> Interpreter:
    return Interpreter(host=host, services=services, show_assignments=True, interactive=True)


@pytest.fixture
def run(interp: Interpreter) -> Callable[[str], Interpreter]:
    def _run(source: str) -> Interpreter:
        interp.load_source(source)
        interp.run()
        return interp

    return _run


def var(interpreter: Interpreter, name: str) -> Value:
    return interpreter.variables.get(var_index(name))
