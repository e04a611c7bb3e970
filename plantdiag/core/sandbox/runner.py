"""沙箱子进程程序

由 SandboxExecutor 以 `python -I runner.py` 启动，每次执行一个脚本后退出。
只依赖标准库和 RestrictedPython，不能导入 plantdiag。

脚本用 RestrictedPython 编译：下划线名称和属性在编译期被拒绝，
属性、下标、迭代在运行期经过 guard。

协议：
- stdin: {"source": str, "context": dict, "max_operations": int}
- stdout: 一行 JSON
  - 成功: {"ok": true, "action": {"tag": ..., "payload": {...}}}
  - 失败: {"ok": false, "kind": ..., "message": ...}
"""
import builtins
import json
import operator
import re
import sys
import traceback

from RestrictedPython import (
    RestrictingNodeTransformer,
    compile_restricted_exec,
    limited_builtins,
    safe_builtins,
)
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

SYNTAX = "syntax"
RUNTIME = "runtime"
RESOURCE_LIMIT = "resource_limit"
INVALID_ACTION = "invalid_action"

SCRIPT_FILENAME = "<decision-script>"

DEFAULT_MAX_OPERATIONS = 200_000
RECURSION_LIMIT = 200


# ===== 编译 =====

class DecisionScriptPolicy(RestrictingNodeTransformer):
    """决策脚本编译策略

    在 RestrictedPython 默认策略上再禁止导入、try 和 class。
    try/except 会吞掉步数超限和递归超限。
    """

    def _reject(self, node):
        self.error(node, f"不允许使用 {type(node).__name__}")

    def visit_Import(self, node):
        self._reject(node)

    def visit_ImportFrom(self, node):
        self._reject(node)

    def visit_Try(self, node):
        self._reject(node)

    def visit_TryStar(self, node):
        self._reject(node)

    def visit_ClassDef(self, node):
        self._reject(node)


_LINE_PREFIX = re.compile(r"^Line (\d+|None): ")


def _format_errors(errors):
    messages = [_LINE_PREFIX.sub(lambda m: f"第 {m.group(1)} 行: ", error) for error in errors]
    return "; ".join(messages)


def compile_script(source):
    """编译脚本

    Returns:
        (code, error)：code 为 None 时 error 为错误信息
    """
    result = compile_restricted_exec(
        source,
        filename=SCRIPT_FILENAME,
        policy=DecisionScriptPolicy,
    )
    if result.errors or result.code is None:
        return None, _format_errors(result.errors) or "脚本无法编译"
    return result.code, None


def check_script(source):
    """静态检查脚本

    Returns:
        None 表示通过，否则返回 (kind, message)
    """
    _, error = compile_script(source)
    if error:
        return SYNTAX, error
    return None


# ===== 运行期 guard =====

# 在 RestrictedPython 提供的内置函数之外再开放的纯函数
EXTRA_BUILTIN_NAMES = (
    "all",
    "any",
    "dict",
    "enumerate",
    "filter",
    "frozenset",
    "list",
    "map",
    "max",
    "min",
    "reversed",
    "set",
    "sum",
)

INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "|=": operator.ior,
    "&=": operator.iand,
    "^=": operator.ixor,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "@=": operator.imatmul,
}


def _inplacevar(op, target, value):
    return INPLACE_OPERATORS[op](target, value)


def build_builtins():
    allowed = dict(safe_builtins)
    allowed.update(limited_builtins)
    allowed.update({name: getattr(builtins, name) for name in EXTRA_BUILTIN_NAMES})
    return allowed


def build_globals(context, constructors):
    """构建脚本全局命名空间：受限内置函数、guard、context 和动作构造函数"""
    namespace = {
        "__builtins__": build_builtins(),
        "__name__": "decision_script",
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_print_": PrintCollector,
        "context": context,
    }
    namespace.update(constructors)
    return namespace


# ===== 动作构造函数 =====

class _ActionRecorder:
    """记录脚本调用的动作构造函数"""

    def __init__(self):
        self.actions = []

    def _record(self, tag, payload):
        action = {"tag": tag, "payload": payload}
        self.actions.append(action)
        return action

    def ask_user(self, question):
        return self._record("ASK_USER", {"question": question})

    def get_plant_vitals(self, reason=""):
        return self._record("GET_PLANT_VITALS", {"reason": reason})

    def log_state(self, key=None, value=None, **state):
        merged = dict(state)
        if key is not None:
            merged[key] = value
        return self._record("LOG_STATE", {"state": merged})

    def conclude(self, finding, recommendation):
        return self._record(
            "CONCLUDE", {"finding": finding, "recommendation": recommendation}
        )

    def constructors(self):
        return {
            "ASK_USER": self.ask_user,
            "GET_PLANT_VITALS": self.get_plant_vitals,
            "LOG_STATE": self.log_state,
            "CONCLUDE": self.conclude,
        }


# ===== 执行 =====

class _OperationBudgetExceeded(BaseException):
    pass


def _install_budget(max_operations):
    counter = [0]

    def tracer(frame, event, arg):
        if frame.f_code.co_filename != SCRIPT_FILENAME:
            return None
        counter[0] += 1
        if counter[0] > max_operations:
            raise _OperationBudgetExceeded()
        return tracer

    sys.settrace(tracer)


def _script_lineno(error):
    for frame in reversed(traceback.extract_tb(error.__traceback__)):
        if frame.filename == SCRIPT_FILENAME:
            return frame.lineno
    return None


def _failure(kind, message):
    return {"ok": False, "kind": kind, "message": message}


def run(source, context, max_operations=DEFAULT_MAX_OPERATIONS):
    """执行脚本，返回协议结果 dict"""
    code, error = compile_script(source)
    if error:
        return _failure(SYNTAX, error)

    recorder = _ActionRecorder()
    namespace = build_globals(context, recorder.constructors())

    sys.setrecursionlimit(RECURSION_LIMIT)
    _install_budget(max_operations)
    try:
        exec(code, namespace)
        decide = namespace.get("decide")
        has_decide = callable(decide)
        result = decide(context) if has_decide else None
    except _OperationBudgetExceeded:
        return _failure(RESOURCE_LIMIT, f"脚本执行步数超过上限 ({max_operations})")
    except (MemoryError, RecursionError) as e:
        return _failure(RESOURCE_LIMIT, f"脚本超出资源限制: {type(e).__name__}")
    except Exception as e:
        lineno = _script_lineno(e)
        location = f"第 {lineno} 行: " if lineno else ""
        return _failure(RUNTIME, f"{location}{type(e).__name__}: {e}")
    finally:
        sys.settrace(None)

    actions = recorder.actions
    if len(actions) != 1:
        return _failure(
            INVALID_ACTION,
            f"脚本必须恰好产出一个动作，实际产出 {len(actions)} 个",
        )
    if has_decide and result is not actions[0]:
        return _failure(INVALID_ACTION, "decide(context) 必须返回动作构造函数的调用结果")

    try:
        json.dumps(actions[0])
    except (TypeError, ValueError) as e:
        return _failure(INVALID_ACTION, f"动作参数无法序列化为 JSON: {e}")

    return {"ok": True, "action": actions[0]}


def _emit(result):
    data = json.dumps(result, ensure_ascii=False) + "\n"
    sys.__stdout__.buffer.write(data.encode("utf-8"))
    sys.__stdout__.flush()


def main():
    request = json.loads(sys.stdin.buffer.read().decode("utf-8"))
    result = run(
        request["source"],
        request.get("context") or {},
        request.get("max_operations", DEFAULT_MAX_OPERATIONS),
    )
    _emit(result)


if __name__ == "__main__":
    main()
