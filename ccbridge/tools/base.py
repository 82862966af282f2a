"""
工具基类模块 (tools/base.py)

模块职责：
    定义编排 Agent 可调用的会话控制工具的抽象基类 Tool。
    每个工具声明 name、description、parameters（JSON Schema）并实现 execute()；
    基类提供参数校验（validate_params）和 Function Calling 格式转换（to_schema）。

在架构中的位置：
    编排 Agent → ToolRegistry.execute(name, params) → Tool.execute() → SessionManager

设计模式对比（Java 视角）：
    Tool 相当于 interface + 模板方法：
    - name/description/parameters 相当于抽象 getter
    - validate_params() 是通用的 JSON Schema 校验模板
    - execute() 是具体业务方法，返回给 Agent 的文本结果
"""

from abc import ABC, abstractmethod
from typing import Any


class Tool(ABC):
    """
    会话控制工具的抽象基类。

    execute() 总是返回文本：成功时是给 Agent 阅读的结果，
    失败时是以 "Error: " 开头的说明，而不是抛出异常。
    """

    # JSON Schema 类型 -> Python 类型
    _TYPE_MAP = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
    }

    @property
    @abstractmethod
    def name(self) -> str:
        """工具名称（Function Call 中的函数名）。"""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """参数的 JSON Schema 定义。"""
        pass

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        pass

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """
        按 JSON Schema 校验参数。

        返回:
            错误信息列表，空列表表示通过
        """
        schema = self.parameters or {}
        if schema.get("type", "object") != "object":
            raise ValueError(f"Schema must be object type, got {schema.get('type')!r}")
        return self._validate(params, {**schema, "type": "object"}, "")

    def _validate(self, val: Any, schema: dict[str, Any], path: str) -> list[str]:
        t, label = schema.get("type"), path or "parameter"
        # bool 是 int 的子类，数值字段不接受布尔值
        if t in ("integer", "number") and isinstance(val, bool):
            return [f"{label} should be {t}"]
        if t in self._TYPE_MAP and not isinstance(val, self._TYPE_MAP[t]):
            return [f"{label} should be {t}"]

        errors = []
        if "enum" in schema and val not in schema["enum"]:
            errors.append(f"{label} must be one of {schema['enum']}")
        if t in ("integer", "number"):
            if "minimum" in schema and val < schema["minimum"]:
                errors.append(f"{label} must be >= {schema['minimum']}")
            if "maximum" in schema and val > schema["maximum"]:
                errors.append(f"{label} must be <= {schema['maximum']}")
        if t == "string":
            if "minLength" in schema and len(val) < schema["minLength"]:
                errors.append(f"{label} must be at least {schema['minLength']} chars")
            if "maxLength" in schema and len(val) > schema["maxLength"]:
                errors.append(f"{label} must be at most {schema['maxLength']} chars")
        if t == "object":
            props = schema.get("properties", {})
            for k in schema.get("required", []):
                if k not in val:
                    errors.append(f"missing required {path + '.' + k if path else k}")
            for k, v in val.items():
                if k in props:
                    errors.extend(self._validate(v, props[k], path + '.' + k if path else k))
        if t == "array" and "items" in schema:
            for i, item in enumerate(val):
                errors.extend(self._validate(item, schema["items"], f"{path}[{i}]" if path else f"[{i}]"))
        return errors

    def to_schema(self) -> dict[str, Any]:
        """转换为 Function Calling 格式的工具定义。"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            }
        }
