import asyncio
from typing import List, Optional
import structlog

from .error_handling import ErrorCollector
from .models import AdapterFailure, AggregationResult, Position
from .protocol_adapters import AdapterRegistry, ProtocolAdapter

logger = structlog.get_logger()


class PositionAggregator:
    """Fans out position reads to every registered adapter.

    One slow or failing adapter never hides the others: its failure is
    reported in ``AggregationResult.failures`` and the rest are returned.
    """

    def __init__(self, registry: AdapterRegistry, timeout: float = 10.0,
                 error_collector: Optional[ErrorCollector] = None):
        self.registry = registry
        self.timeout = timeout
        self.error_collector = error_collector

    async def _read(self, adapter: ProtocolAdapter, owner: str) -> List[Position]:
        return await asyncio.wait_for(adapter.get_user_positions(owner), timeout=self.timeout)

    async def aggregate(self, owner: str) -> AggregationResult:
        adapters = self.registry.adapters()
        results = await asyncio.gather(
            *(self._read(adapter, owner) for adapter in adapters),
            return_exceptions=True
        )

        positions: List[Position] = []
        failures: List[AdapterFailure] = []

        for adapter, result in zip(adapters, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                message = str(result) or ("Timed out" if isinstance(result, asyncio.TimeoutError) else "")
                failures.append(AdapterFailure(
                    platform=adapter.platform,
                    error_type=type(result).__name__,
                    message=message
                ))
                logger.warning("Adapter failed", platform=adapter.platform,
                               owner=owner, error=message)
                if self.error_collector:
                    self.error_collector.record_error(result, {"platform": adapter.platform, "owner": owner})
                continue

            for position in result:
                positions.append(position.model_copy(update={
                    "platform": adapter.platform,
                    "owner": owner
                }))

        if failures:
            logger.info("Partial aggregation", owner=owner,
                        positions=len(positions), failed=len(failures))

        return AggregationResult(positions=positions, failures=failures, adapter_count=len(adapters))
