"""Entry point executed inside the sandbox subprocess.

The parent starts this file with ``python -I`` and writes a JSON request on
stdin: ``{"code", "message", "context", "allowed_hosts"}``. User code is
checked for private and frame attribute access, then compiled against an
allow-listed global namespace without ``__import__`` or
``open``; the JSON response is written to stdout.
"""
import ast
import datetime
import json
import math
import re
import sys
import time
import traceback
import uuid
from types import SimpleNamespace
from urllib.parse import urlsplit

CODE_FILENAME = "<flow-code>"

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "callable", "chr", "dict", "divmod", "enumerate",
    "filter", "float", "format", "frozenset", "hash", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "ord", "pow",
    "range", "repr", "reversed", "round", "set", "slice", "sorted", "str", "sum",
    "tuple", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception",
    "IndexError", "KeyError", "LookupError", "NotImplementedError",
    "RuntimeError", "StopIteration", "TypeError", "ValueError",
    "ZeroDivisionError",
)

# Attributes that reach interpreter frames and code objects.
_BLOCKED_ATTRIBUTES = frozenset(
    {
        "ag_code", "ag_frame", "cr_code", "cr_frame", "f_back", "f_builtins",
        "f_code", "f_globals", "f_locals", "gi_code", "gi_frame", "gi_yieldfrom",
        "mro", "tb_frame", "tb_next",
    }
)

logs = []


def _render(args):
    parts = []
    for arg in args:
        if isinstance(arg, str):
            parts.append(arg)
        else:
            parts.append(json.dumps(arg, default=str))
    return " ".join(parts)


class Console:
    """Capturing replacement for the process console."""

    def log(self, *args):
        logs.append(_render(args))

    info = log
    debug = log

    def warn(self, *args):
        logs.append("[warn] " + _render(args))

    warning = warn

    def error(self, *args):
        logs.append("[error] " + _render(args))


def _print(*args, sep=" ", end="\n"):
    logs.append(sep.join(arg if isinstance(arg, str) else repr(arg) for arg in args))


def _get(obj, path, default=None):
    current = obj
    for part in str(path).replace("[", ".").replace("]", "").split("."):
        if part == "":
            continue
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def _words(text):
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", str(text))
    return [word for word in re.split(r"[^A-Za-z0-9]+", spaced) if word]


def _chunk(items, size):
    size = max(1, int(size))
    return [list(items[index:index + size]) for index in range(0, len(items), size)]


def _flatten(items):
    flat = []
    for item in items:
        if isinstance(item, (list, tuple)):
            flat.extend(item)
        else:
            flat.append(item)
    return flat


def _uniq(items):
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def _group_by(items, key):
    groups = {}
    for item in items:
        value = key(item) if callable(key) else _get(item, key)
        groups.setdefault(str(value), []).append(item)
    return groups


def _sort_by(items, key):
    return sorted(items, key=key if callable(key) else lambda item: _get(item, key))


helpers = SimpleNamespace(
    get=_get,
    pick=lambda obj, keys: {key: obj[key] for key in keys if key in obj},
    omit=lambda obj, keys: {key: value for key, value in obj.items() if key not in keys},
    merge=lambda *objs: {key: value for obj in objs for key, value in obj.items()},
    chunk=_chunk,
    flatten=_flatten,
    uniq=_uniq,
    group_by=_group_by,
    sort_by=_sort_by,
    camel_case=lambda text: "".join(
        word.lower() if index == 0 else word.capitalize()
        for index, word in enumerate(_words(text))
    ),
    snake_case=lambda text: "_".join(word.lower() for word in _words(text)),
    kebab_case=lambda text: "-".join(word.lower() for word in _words(text)),
    capitalize=lambda text: str(text)[:1].upper() + str(text)[1:],
    truncate=lambda text, length=30, suffix="...": (
        str(text) if len(str(text)) <= length else str(text)[: max(0, length - len(suffix))] + suffix
    ),
)

uuid_helpers = SimpleNamespace(
    v4=lambda: str(uuid.uuid4()),
    v5=lambda name, namespace: str(uuid.uuid5(uuid.UUID(namespace), name)),
    validate=lambda value: _is_uuid(value),
)

math_helpers = SimpleNamespace(
    **{
        name: getattr(math, name)
        for name in (
            "ceil", "cos", "e", "exp", "fabs", "floor", "fsum", "gcd", "inf", "isclose",
            "isfinite", "isinf", "isnan", "log", "log10", "log2", "nan", "pi", "pow",
            "prod", "sin", "sqrt", "tan", "trunc",
        )
    }
)

re_helpers = SimpleNamespace(
    compile=re.compile,
    escape=re.escape,
    findall=re.findall,
    fullmatch=re.fullmatch,
    match=re.match,
    search=re.search,
    split=re.split,
    sub=re.sub,
    IGNORECASE=re.IGNORECASE,
    MULTILINE=re.MULTILINE,
    DOTALL=re.DOTALL,
)

datetime_helpers = SimpleNamespace(
    date=datetime.date,
    datetime=datetime.datetime,
    time=datetime.time,
    timedelta=datetime.timedelta,
    timezone=datetime.timezone,
)


def _is_uuid(value):
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _make_fetch(allowed_hosts):
    allowed = {host.lower() for host in allowed_hosts}

    def fetch(url, method="GET", headers=None, json=None, data=None, timeout=10):
        parts = urlsplit(str(url))
        if parts.scheme not in ("http", "https"):
            raise PermissionError(f"fetch only supports http(s) URLs, got {parts.scheme!r}")
        host = (parts.hostname or "").lower()
        if host not in allowed:
            raise PermissionError(f"fetch to host {host!r} is not allowed")

        import requests

        response = requests.request(
            method.upper(), url, headers=headers, json=json, data=data, timeout=float(timeout)
        )
        try:
            body = response.json()
        except ValueError:
            body = None
        return {
            "status": response.status_code,
            "ok": response.ok,
            "headers": dict(response.headers),
            "text": response.text,
            "json": body,
        }

    return fetch


def _sleep(milliseconds):
    time.sleep(max(0.0, float(milliseconds)) / 1000)


def _build_globals(allowed_hosts):
    import builtins

    safe_builtins = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}
    safe_builtins["print"] = _print
    return {
        "__builtins__": safe_builtins,
        "__name__": "flow_code",
        "console": Console(),
        "helpers": helpers,
        "_": helpers,
        "json": SimpleNamespace(loads=json.loads, dumps=json.dumps),
        "math": math_helpers,
        "re": re_helpers,
        "datetime": datetime_helpers,
        "time": SimpleNamespace(time=time.time, monotonic=time.monotonic),
        "uuid": uuid_helpers,
        "fetch": _make_fetch(allowed_hosts),
        "sleep": _sleep,
    }


def _check_code(tree):
    """Reject attribute access that could leave the allow-listed namespace."""

    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and (
            node.attr.startswith("_") or node.attr in _BLOCKED_ATTRIBUTES
        ):
            raise PermissionError(
                f"access to attribute {node.attr!r} is not allowed (line {node.lineno})"
            )
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise PermissionError(f"access to name {node.id!r} is not allowed (line {node.lineno})")


def _code_stack(exc):
    frames = [frame for frame in traceback.extract_tb(exc.__traceback__) if frame.filename == CODE_FILENAME]
    lines = ["Traceback (most recent call last):\n"]
    lines.extend(traceback.format_list(frames))
    lines.extend(traceback.format_exception_only(type(exc), exc))
    return "".join(lines)


def _respond(payload):
    sys.stdout.write(json.dumps(payload, default=str))
    sys.stdout.flush()


def main():
    request = json.loads(sys.stdin.read() or "{}")
    namespace = _build_globals(request.get("allowed_hosts") or [])

    try:
        tree = ast.parse(request.get("code") or "", CODE_FILENAME)
        compiled = compile(tree, CODE_FILENAME, "exec")
    except SyntaxError as exc:
        _respond(
            {
                "ok": False,
                "logs": logs,
                "error": {
                    "type": "SyntaxError",
                    "message": f"{exc.msg} (line {exc.lineno})",
                    "stack": "".join(traceback.format_exception_only(type(exc), exc)),
                },
            }
        )
        return

    try:
        _check_code(tree)
        exec(compiled, namespace)
        run = namespace.get("run")
        if not callable(run):
            raise NameError("code must define a run(message, context) function")
        result = run(request.get("message"), request.get("context") or {})
        encoded = json.dumps({"ok": True, "result": result, "logs": logs}, default=str)
    except Exception as exc:
        _respond(
            {
                "ok": False,
                "logs": logs,
                "error": {
                    "type": type(exc).__name__,
                    "message": str(exc) or type(exc).__name__,
                    "stack": _code_stack(exc),
                },
            }
        )
        return

    sys.stdout.write(encoded)
    sys.stdout.flush()


if __name__ == "__main__":
    main()
