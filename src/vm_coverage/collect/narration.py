"""叙述输出（可选的 append-only 文本 sink，仅用于观察，不影响控制流）。"""

from __future__ import annotations

import traceback
from typing import Optional, Protocol


class TextSink(Protocol):
    """任何提供 `write(str)` 的对象（例如 `io.StringIO`、`sys.stderr`）。"""

    def write(self, text: str) -> object:
        """追加文本。"""

        ...


def narrate(output: Optional[TextSink], line: str) -> None:
    """向 sink 追加一行（sink 为 None 时忽略）。"""

    if output is None:
        return
    output.write(f"{line}\n")


def narrate_exception(output: Optional[TextSink], exc: BaseException) -> str:
    """
    把异常与其 traceback 写入 sink。

    返回：
    - 异常的单行文本（用于报告的 `error` 字段）
    """

    text = str(exc) or type(exc).__name__
    narrate(output, text)
    narrate(output, "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip("\n"))
    return text
