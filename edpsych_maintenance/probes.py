"""
Concurrent execution of read-only store probes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger('edpsych.probes')


@dataclass
class ProbeOutcome:
    name: str
    value: Any = None
    error: Optional[BaseException] = None
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.timed_out


async def run_probes(probes: Dict[str, Callable[[], Any]], timeout: float,
                     max_concurrency: int = 4) -> Dict[str, ProbeOutcome]:
    """Run blocking probes on executor threads and join them all.

    A probe that exceeds ``timeout`` seconds is abandoned and reported as
    timed out; its thread is left to finish on its own.
    """
    loop = asyncio.get_running_loop()
    semaphore = asyncio.Semaphore(max_concurrency)

    async def run_one(name: str, probe: Callable[[], Any]) -> ProbeOutcome:
        async with semaphore:
            started = time.monotonic()
            try:
                value = await asyncio.wait_for(loop.run_in_executor(None, probe), timeout=timeout)
                return ProbeOutcome(name, value=value, duration_ms=(time.monotonic() - started) * 1000)
            except asyncio.TimeoutError:
                logger.warning(f"Probe {name} exceeded {timeout}s and was abandoned")
                return ProbeOutcome(name, timed_out=True, duration_ms=(time.monotonic() - started) * 1000)
            except Exception as e:
                logger.error(f"Probe {name} failed: {e}")
                return ProbeOutcome(name, error=e, duration_ms=(time.monotonic() - started) * 1000)

    outcomes = await asyncio.gather(*(run_one(name, probe) for name, probe in probes.items()))
    return {outcome.name: outcome for outcome in outcomes}
