"""Phase gate API routes."""

from itertools import groupby
from operator import attrgetter

from fastapi import APIRouter, Depends

from phasegate.api.deps import get_gate_service
from phasegate.core.auth import AuthUser, require_auth
from phasegate.domain.audit import verify_chain
from phasegate.schemas.gates import (
    AuditEntryResponse,
    AuditTrailResponse,
    BlockedPhaseResponse,
    BlockedPhasesResponse,
    GateEvaluationResponse,
    GateStateResponse,
    OverrideGateRequest,
    OverrideGateResponse,
    ProjectAuditTrailResponse,
)
from phasegate.services.gate_service import GateService
from phasegate.services.override import OverrideRequest

router = APIRouter()


@router.get("/projects/{project_id}/phases/{phase_number}/gate", response_model=GateEvaluationResponse)
async def check_phase(
    project_id: str,
    phase_number: int,
    user: AuthUser = Depends(require_auth),
    service: GateService = Depends(get_gate_service),
):
    """Check whether a phase may start. Safe and idempotent; never changes state.

    Raises:
        HTTPException(404): Unknown project/phase
        HTTPException(503): Facts unavailable (treat the phase as blocked)
    """
    evaluation = await service.check_phase(project_id, phase_number)
    return GateEvaluationResponse.from_evaluation(evaluation)


@router.get("/projects/{project_id}/gates/blocked", response_model=BlockedPhasesResponse)
async def list_blocked_phases(
    project_id: str,
    user: AuthUser = Depends(require_auth),
    service: GateService = Depends(get_gate_service),
):
    """List every pending phase of a project whose gate is currently blocked."""
    phases = [BlockedPhaseResponse.from_blocked(b) async for b in service.list_blocked_phases(project_id)]
    return BlockedPhasesResponse(project_id=project_id, phases=phases)


@router.post(
    "/projects/{project_id}/phases/{phase_number}/gate/override",
    response_model=OverrideGateResponse,
)
async def override_gate(
    project_id: str,
    phase_number: int,
    request: OverrideGateRequest,
    user: AuthUser = Depends(require_auth),
    service: GateService = Depends(get_gate_service),
):
    """Force-unlock a blocked phase. Irreversible and audited.

    Raises:
        HTTPException(403): Actor lacks the override role
        HTTPException(404): Unknown project/phase
        HTTPException(409): Phase already unlocked, started, or no longer blocked
        HTTPException(422): Reason too short or confirmation phrase mismatch
        HTTPException(503): Storage or fact provider failure; nothing was changed
    """
    result = await service.override(
        OverrideRequest(
            project_id=project_id,
            phase_number=phase_number,
            actor=user.user_id,
            actor_roles=user.roles,
            reason=request.reason,
            confirmation_token=request.confirmation,
        )
    )
    return OverrideGateResponse(
        project_id=project_id,
        phase_number=phase_number,
        audit_entry=AuditEntryResponse.from_entry(result.audit_entry),
        state=GateStateResponse.from_state(result.state),
    )


@router.get("/projects/{project_id}/phases/{phase_number}/gate/audit", response_model=AuditTrailResponse)
async def audit_trail(
    project_id: str,
    phase_number: int,
    user: AuthUser = Depends(require_auth),
    service: GateService = Depends(get_gate_service),
):
    """Every override attempt for a phase, oldest first, with chain verification."""
    entries = [entry async for entry in service.audit_trail(project_id, phase_number)]
    problems = verify_chain(entries)
    return AuditTrailResponse(
        project_id=project_id,
        phase_number=phase_number,
        entries=[AuditEntryResponse.from_entry(e) for e in entries],
        chain_valid=not problems,
        chain_problems=problems,
    )


@router.get("/projects/{project_id}/gates/audit", response_model=ProjectAuditTrailResponse)
async def project_audit_trail(
    project_id: str,
    user: AuthUser = Depends(require_auth),
    service: GateService = Depends(get_gate_service),
):
    """Every override attempt on a project, by phase and then oldest first.

    Each phase chain is verified on its own.
    """
    entries = [entry async for entry in service.project_audit_trail(project_id)]
    problems = [
        f"phase {phase_number}: {problem}"
        for phase_number, chain in groupby(entries, key=attrgetter("phase_number"))
        for problem in verify_chain(list(chain))
    ]
    return ProjectAuditTrailResponse(
        project_id=project_id,
        entries=[AuditEntryResponse.from_entry(e) for e in entries],
        chain_valid=not problems,
        chain_problems=problems,
    )


@router.post("/projects/{project_id}/phases/{phase_number}/gate/seal", response_model=GateStateResponse)
async def seal_gate(
    project_id: str,
    phase_number: int,
    user: AuthUser = Depends(require_auth),
    service: GateService = Depends(get_gate_service),
):
    """Freeze the gate once the phase has been started by the project aggregate.

    Raises:
        HTTPException(404): Unknown project/phase
        HTTPException(409): Phase is still pending
    """
    state = await service.seal_phase(project_id, phase_number)
    return GateStateResponse.from_state(state)
