"""
Isolate 同步：等待全部 isolate paused（Pause Synchronizer）与清理阶段的 resume（Isolate Resumer）。

约束：
- 每次轮询都通过 `getVM` 重新枚举 isolate 集合（集合会动态增减，不缓存任何 isolate 状态）；
- `wait_isolates_paused` 只观察，不改变执行状态。
"""

from __future__ import annotations

import logging
from typing import Optional

from vm_coverage.core.errors import PauseTimeoutError, VmServiceError
from vm_coverage.core.retry import poll_until
from vm_coverage.service.protocol import VmService

logger = logging.getLogger(__name__)


async def all_isolates_paused(service: VmService) -> bool:
    """
    就绪谓词：当前枚举到的每个 isolate 都处于 paused 状态。

    说明：
    - 枚举与加载之间 isolate 退出（加载失败）视为“集合变化，尚未就绪”，下一轮重新枚举。
    """

    vm = await service.get_vm()
    for ref in vm.isolates:
        try:
            isolate = await service.get_isolate(ref)
        except VmServiceError as exc:
            logger.debug("Isolate %s could not be loaded while polling pause state: %s", ref.id, exc)
            return False
        if not isolate.paused:
            logger.debug("Isolate %s (%s) is still running", ref.name, ref.id)
            return False
    return True


async def wait_isolates_paused(service: VmService, *, interval: float, timeout: Optional[float] = None) -> None:
    """
    阻塞直到全部 isolate paused。

    异常：
    - PauseTimeoutError：整体超时内仍有 isolate 未 paused
    """

    await poll_until(
        lambda: all_isolates_paused(service),
        interval,
        timeout=timeout,
        timeout_error=PauseTimeoutError,
        what="waiting for isolates to pause",
    )


async def resume_isolates(service: VmService) -> int:
    """
    恢复所有仍处于 paused 状态的 isolate（幂等）。

    返回：
    - 实际发出 resume 的 isolate 数量
    """

    vm = await service.get_vm()
    resumed = 0
    for ref in vm.isolates:
        isolate = await service.get_isolate(ref)
        if isolate.paused:
            await service.resume(ref)
            resumed += 1
    logger.debug("Resumed %d paused isolate(s)", resumed)
    return resumed
