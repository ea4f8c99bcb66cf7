"""HTTP routes for the Warfront API.

The acting user is passed as ``actor_id`` in request bodies. Rejections
raised by the services are turned into JSON errors by the handler that
``create_app`` installs.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from warfront.api.runtime import ApiState
from warfront.database import check_database_health
from warfront.domain.enums import BattleKind, BattleSide, BattleStatus, RebellionStatus
from warfront.factory import Services

router = APIRouter()


def get_state(request: Request) -> ApiState:
    state = getattr(request.app.state, "api_state", None)
    if state is None:  # pragma: no cover - FastAPI should always initialise state
        raise RuntimeError("API state not initialised")
    return state


ApiStateDep = Annotated[ApiState, Depends(get_state)]


def get_session(state: ApiStateDep) -> Iterator[Session]:
    yield from state.session()


SessionDep = Annotated[Session, Depends(get_session)]


def get_services(state: ApiStateDep, session: SessionDep) -> Services:
    return state.services(session)


ServicesDep = Annotated[Services, Depends(get_services)]


class ActorRequest(BaseModel):
    actor_id: int


class StartBattleRequest(BaseModel):
    attacker_community_id: int
    territory_id: str = Field(min_length=1)


class StartBattleResponse(BaseModel):
    battle_id: int


class DamageRequest(ActorRequest):
    side: BattleSide
    amount: int


class DamageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    battle_id: int
    side: BattleSide
    damage: int
    critical: bool
    energy_cost: int
    current_defense: int
    attacker_score: int
    defender_score: int
    status: BattleStatus
    hit: bool
    focus: float
    adrenaline_bonus: float


class BattleStatusResponse(BaseModel):
    battle_id: int
    status: BattleStatus


class BattleDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: BattleKind
    status: BattleStatus
    territory_id: str | None
    attacker_community_id: int
    defender_community_id: int | None
    started_at: datetime
    ends_at: datetime
    initial_defense: int
    current_defense: int
    attacker_score: int
    defender_score: int
    resolved_at: datetime | None


class UprisingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rebellion_id: int
    required_supports: int
    civil_war_id: int | None


class EligibilityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    eligible: bool
    reason: str | None


class RebellionDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    community_id: int
    leader_id: int
    target_id: int | None
    status: RebellionStatus
    current_supports: int
    required_supports: int
    started_at: datetime
    agitation_expires_at: datetime
    is_leader_exiled: bool
    cooldown_until: datetime | None
    resolved_at: datetime | None


class SupportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    current_supports: int
    required_supports: int
    civil_war_started: bool
    civil_war_id: int | None


class SuccessResponse(BaseModel):
    success: bool = True


class NegotiationResponse(BaseModel):
    negotiation_id: int


class RespondRequest(ActorRequest):
    accept: bool


class NegotiationOutcomeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    negotiation_id: int
    accepted: bool
    rebellion_status: RebellionStatus


class ResolveCivilWarRequest(BaseModel):
    winner_id: int


class CivilWarOutcomeResponse(BaseModel):
    civil_war_id: int
    outcome: str


class ModifierSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    community_id: int
    disarray_multiplier: float
    disarray_active: bool
    momentum_active: bool
    momentum_expires_at: datetime | None
    exhaustion_active: bool
    recent_conquests: int
    current_win_streak: int
    total_conquests: int


class SweepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    battles_resolved: int
    rebellions_failed: int
    reconciled: int
    errors: int


class MaintenanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rage_decayed: int
    disarray_cleared: int
    momentum_cleared: int
    exhaustion_changed: int
    energy_regenerated: int
    errors: int


@router.get("/health")
async def health(state: ApiStateDep) -> dict[str, object]:
    database_ok = check_database_health(state.engine)
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "sweeps_running": state.sweeps.is_running,
    }


# -------------------------------------------------------------------- battles


@router.get("/battles", response_model=list[BattleDetail])
def list_battles(services: ServicesDep) -> list[BattleDetail]:
    return [BattleDetail.model_validate(b) for b in services.battles.list_active_battles()]


@router.post(
    "/battles", response_model=StartBattleResponse, status_code=status.HTTP_201_CREATED
)
def start_battle(request: StartBattleRequest, services: ServicesDep) -> StartBattleResponse:
    battle_id = services.battles.start_battle(
        request.attacker_community_id, request.territory_id
    )
    return StartBattleResponse(battle_id=battle_id)


@router.get("/battles/{battle_id}", response_model=BattleDetail)
def get_battle(battle_id: int, services: ServicesDep) -> BattleDetail:
    return BattleDetail.model_validate(services.battles.get_battle(battle_id))


@router.post("/battles/{battle_id}/damage", response_model=DamageResponse)
def apply_damage(battle_id: int, request: DamageRequest, services: ServicesDep) -> DamageResponse:
    result = services.battles.apply_damage(
        battle_id, request.actor_id, request.side, request.amount
    )
    return DamageResponse.model_validate(result)


@router.post("/battles/{battle_id}/resolve", response_model=BattleStatusResponse)
def resolve_battle(battle_id: int, services: ServicesDep) -> BattleStatusResponse:
    return BattleStatusResponse(battle_id=battle_id, status=services.battles.resolve(battle_id))


# ----------------------------------------------------------------- rebellions


@router.post(
    "/communities/{community_id}/rebellions",
    response_model=UprisingResponse,
    status_code=status.HTTP_201_CREATED,
)
def start_uprising(
    community_id: int, request: ActorRequest, services: ServicesDep
) -> UprisingResponse:
    result = services.rebellions.start_uprising(request.actor_id, community_id)
    return UprisingResponse.model_validate(result)


@router.get("/communities/{community_id}/rebellions/eligibility", response_model=EligibilityResponse)
def uprising_eligibility(
    community_id: int, user_id: int, services: ServicesDep
) -> EligibilityResponse:
    result = services.rebellions.can_start_uprising(user_id, community_id)
    return EligibilityResponse.model_validate(result)


@router.get("/rebellions/{rebellion_id}", response_model=RebellionDetail)
def get_rebellion(rebellion_id: int, services: ServicesDep) -> RebellionDetail:
    return RebellionDetail.model_validate(services.rebellions.get_rebellion(rebellion_id))


@router.post("/rebellions/{rebellion_id}/support", response_model=SupportResponse)
def support_uprising(
    rebellion_id: int, request: ActorRequest, services: ServicesDep
) -> SupportResponse:
    result = services.rebellions.support_uprising(request.actor_id, rebellion_id)
    return SupportResponse.model_validate(result)


@router.post("/rebellions/{rebellion_id}/exile", response_model=SuccessResponse)
def exile_leader(rebellion_id: int, request: ActorRequest, services: ServicesDep) -> SuccessResponse:
    return SuccessResponse(success=services.rebellions.exile_leader(rebellion_id, request.actor_id))


@router.post("/rebellions/{rebellion_id}/reinvite", response_model=SuccessResponse)
def reinvite_leader(
    rebellion_id: int, request: ActorRequest, services: ServicesDep
) -> SuccessResponse:
    return SuccessResponse(
        success=services.rebellions.reinvite_leader(rebellion_id, request.actor_id)
    )


@router.post(
    "/rebellions/{rebellion_id}/negotiations",
    response_model=NegotiationResponse,
    status_code=status.HTTP_201_CREATED,
)
def request_negotiation(
    rebellion_id: int, request: ActorRequest, services: ServicesDep
) -> NegotiationResponse:
    negotiation_id = services.rebellions.request_negotiation(rebellion_id, request.actor_id)
    return NegotiationResponse(negotiation_id=negotiation_id)


@router.post("/negotiations/{negotiation_id}/respond", response_model=NegotiationOutcomeResponse)
def respond_to_negotiation(
    negotiation_id: int, request: RespondRequest, services: ServicesDep
) -> NegotiationOutcomeResponse:
    outcome = services.rebellions.respond_to_negotiation(
        negotiation_id, request.actor_id, request.accept
    )
    return NegotiationOutcomeResponse.model_validate(outcome)


@router.post("/civil-wars/{civil_war_id}/resolve", response_model=CivilWarOutcomeResponse)
def resolve_civil_war(
    civil_war_id: int, request: ResolveCivilWarRequest, services: ServicesDep
) -> CivilWarOutcomeResponse:
    outcome = services.rebellions.resolve_civil_war(civil_war_id, request.winner_id)
    return CivilWarOutcomeResponse(civil_war_id=civil_war_id, outcome=outcome)


# ------------------------------------------------------------------ modifiers


@router.get("/communities/{community_id}/modifiers", response_model=ModifierSnapshotResponse)
def get_modifiers(community_id: int, services: ServicesDep) -> ModifierSnapshotResponse:
    session = services.session
    try:
        snapshot = services.modifiers.get_state(community_id)
        # Reading clears expired states
        session.commit()
    except Exception:
        session.rollback()
        raise
    return ModifierSnapshotResponse.model_validate(snapshot)


# --------------------------------------------------------------------- sweeps


@router.post("/sweeps/battles", response_model=SweepResponse)
async def run_battle_sweep(state: ApiStateDep) -> SweepResponse:
    return SweepResponse.model_validate(await state.sweeps.run_battle_sweep())


@router.post("/sweeps/maintenance", response_model=MaintenanceResponse)
async def run_maintenance_sweep(state: ApiStateDep) -> MaintenanceResponse:
    return MaintenanceResponse.model_validate(await state.sweeps.run_maintenance_sweep())
