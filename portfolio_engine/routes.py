from fastapi import APIRouter, HTTPException, Depends, Header, Request
from typing import Optional, List, Dict, Any
import structlog

from .config import VERSION, ProtocolType, RiskLevel
from .models import (
    ActionParams, AlertsResponse, CommandResponse, MarketSnapshot, PositionAnalytics,
    PositionsResponse, RebalancingRecommendation, RecommendationsResponse, RiskProfile,
    RiskQuestionnaire, Strategy, utcnow
)
from .security import verify_wallet_address, verify_identifier
from .service import PortfolioService

logger = structlog.get_logger()

router = APIRouter(prefix="/api")


def get_service(request: Request) -> PortfolioService:
    return request.app.state.service


async def validate_wallet_header(x_wallet_address: Optional[str] = Header(None)) -> str:
    """Validate wallet address header"""
    if not x_wallet_address:
        raise HTTPException(
            status_code=401,
            detail="Missing x-wallet-address header"
        )

    if not verify_wallet_address(x_wallet_address):
        raise HTTPException(
            status_code=400,
            detail="Invalid wallet address format"
        )

    # Base58 is case-sensitive; the address is used as given
    return x_wallet_address


def validate_identifier(identifier: str) -> str:
    if not verify_identifier(identifier):
        raise HTTPException(status_code=400, detail="Invalid identifier")
    return identifier


@router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": VERSION,
        "timestamp": utcnow().isoformat()
    }


@router.get("/status")
async def get_system_status(
    x_wallet_address: Optional[str] = Header(None),
    service: PortfolioService = Depends(get_service)
) -> Dict[str, Any]:
    """Monitoring status; includes the caller's section when a valid wallet header is sent"""
    owner = x_wallet_address if x_wallet_address and verify_wallet_address(x_wallet_address) else None
    return await service.get_monitoring_status(owner)


@router.get("/strategies", response_model=List[Strategy])
async def list_strategies(
    protocol_type: Optional[ProtocolType] = None,
    risk_level: Optional[RiskLevel] = None,
    min_apy: Optional[float] = None,
    max_apy: Optional[float] = None,
    token: Optional[str] = None,
    verified_only: bool = False,
    service: PortfolioService = Depends(get_service)
):
    """List strategies; APY bounds are in percent"""
    return service.get_strategies(
        protocol_type=protocol_type,
        risk_level=risk_level,
        min_apy=min_apy,
        max_apy=max_apy,
        token=token,
        verified_only=verified_only
    )


@router.get("/strategies/trending", response_model=List[Strategy])
async def trending_strategies(limit: int = 5, service: PortfolioService = Depends(get_service)):
    if limit < 1 or limit > 50:
        raise HTTPException(status_code=400, detail="Limit must be between 1 and 50")
    return service.get_trending_strategies(limit)


@router.get("/strategies/{strategy_id}", response_model=Strategy)
async def get_strategy(strategy_id: str, service: PortfolioService = Depends(get_service)):
    return service.get_strategy(validate_identifier(strategy_id))


@router.get("/market/snapshot", response_model=MarketSnapshot)
async def get_market_snapshot(service: PortfolioService = Depends(get_service)):
    return await service.get_market_snapshot()


@router.get("/market/apys")
async def get_live_apys(service: PortfolioService = Depends(get_service)):
    return await service.get_live_apys()


@router.get("/positions", response_model=PositionsResponse)
async def get_positions(
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    result = await service.get_user_positions(wallet_address)
    return PositionsResponse(positions=result.positions, failures=result.failures, partial=result.partial)


@router.get("/positions/{strategy_id}/analytics", response_model=PositionAnalytics)
async def get_position_analytics(
    strategy_id: str,
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    return await service.analyze_position(wallet_address, validate_identifier(strategy_id))


@router.get("/rebalancing", response_model=List[RebalancingRecommendation])
async def get_rebalancing_advice(
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    return await service.advise_rebalancing(wallet_address)


@router.post("/risk-profile", response_model=RiskProfile)
async def assess_risk_profile(
    questionnaire: RiskQuestionnaire,
    service: PortfolioService = Depends(get_service)
):
    return service.assess_risk_profile(questionnaire)


@router.post("/recommendations", response_model=RecommendationsResponse)
async def get_recommendations(
    profile: RiskProfile,
    service: PortfolioService = Depends(get_service)
):
    recommendations = await service.recommend_strategies(profile)
    allocation = await service.optimize_allocation(profile, recommendations)
    return RecommendationsResponse(recommendations=recommendations, allocation=allocation)


@router.get("/alerts", response_model=AlertsResponse)
async def get_alerts(
    unread_only: bool = False,
    limit: int = 50,
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="Limit must be between 1 and 500")

    alerts = await service.get_alerts(wallet_address)
    unread_count = sum(1 for alert in alerts if not alert.read)
    if unread_only:
        alerts = [alert for alert in alerts if not alert.read]

    return AlertsResponse(
        total_count=len(alerts),
        unread_count=unread_count,
        alerts=alerts[:limit]
    )


@router.get("/alerts/unread-count")
async def get_unread_alert_count(
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    return {"unread_count": await service.get_unread_alert_count(wallet_address)}


@router.post("/alerts/{alert_id}/read")
async def mark_alert_read(
    alert_id: str,
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    updated = await service.mark_alert_read(wallet_address, validate_identifier(alert_id))
    return {"alert_id": alert_id, "updated": updated}


@router.delete("/alerts")
async def clear_alerts(
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    return {"cleared": await service.clear_alerts(wallet_address)}


@router.post("/monitoring/start")
async def start_monitoring(
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    await service.start_monitoring(wallet_address)
    return {"status": "monitoring", "owner": wallet_address}


@router.post("/monitoring/stop")
async def stop_monitoring(
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    stopped = await service.stop_monitoring(wallet_address)
    return {"status": "stopped" if stopped else "not_monitoring", "owner": wallet_address}


COMMANDS = {
    "subscribe": PortfolioService.subscribe,
    "unsubscribe": PortfolioService.unsubscribe,
    "harvest": PortfolioService.harvest,
    "rebalance": PortfolioService.rebalance,
}


@router.post("/strategies/{strategy_id}/{command}", response_model=CommandResponse)
async def run_strategy_command(
    strategy_id: str,
    command: str,
    params: Optional[ActionParams] = None,
    wallet_address: str = Depends(validate_wallet_header),
    service: PortfolioService = Depends(get_service)
):
    handler = COMMANDS.get(command)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown command '{command}'")

    logger.info("Strategy command requested", command=command,
                strategy_id=strategy_id, owner=wallet_address)
    return await handler(service, wallet_address, validate_identifier(strategy_id), params or ActionParams())
