"""Change request workflow API endpoints.

Engine errors propagate to the application's exception handler, which maps
them onto HTTP status codes. Handlers are plain functions so the blocking
session work runs in the threadpool, off the event loop.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from mocflow.api.deps import get_current_user, get_db
from mocflow.api.schemas.change_requests import (
    ChangeRequestCreate,
    ChangeRequestFields,
    CloseoutVoteRequest,
    DepartmentVoteRequest,
    StatusChangeRequest,
)
from mocflow.api.schemas.common import SuccessResponse
from mocflow.core.workflow.service import ChangeRequestService
from mocflow.services.directory import UserInfo

router = APIRouter(prefix="/change-requests", tags=["change-requests"])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_change_request(
    body: ChangeRequestCreate,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    """Create a change request in draft."""
    service = ChangeRequestService(db)
    return service.create_change_request(current_user.id, body.model_dump(exclude_unset=True))


@router.get("")
def list_change_requests(
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
    status_filter: Optional[str] = Query(None, alias="status"),
) -> List[dict]:
    """List the change requests visible to the current user."""
    return ChangeRequestService(db).list_change_requests(current_user.id, status_filter)


@router.get("/department-queue")
def department_queue(
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
) -> List[dict]:
    """Change requests relevant to the departments the user approves for."""
    return ChangeRequestService(db).list_department_queue(current_user.id)


@router.get("/{request_id}")
def get_change_request(
    request_id: UUID,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    """Get a change request with resolved names."""
    return ChangeRequestService(db).get_change_request(request_id, current_user.id)


@router.patch("/{request_id}")
def update_change_request(
    request_id: UUID,
    body: ChangeRequestFields,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    """Edit change request content."""
    service = ChangeRequestService(db)
    return service.update_content(request_id, body.model_dump(exclude_unset=True), current_user.id)


@router.post("/{request_id}/status")
def change_status(
    request_id: UUID,
    body: StatusChangeRequest,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    """Request a status transition."""
    service = ChangeRequestService(db)
    return service.request_transition(request_id, body.new_status, current_user.id, body.comments)


@router.post("/{request_id}/department-votes")
def cast_department_vote(
    request_id: UUID,
    body: DepartmentVoteRequest,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    """Approve or reject on behalf of a department."""
    service = ChangeRequestService(db)
    return service.cast_department_vote(
        request_id, body.department_id, body.decision, current_user.id, body.comments,
    )


@router.post("/{request_id}/closeout-votes")
def cast_closeout_vote(
    request_id: UUID,
    body: CloseoutVoteRequest,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    """Approve or reject closeout."""
    service = ChangeRequestService(db)
    return service.cast_closeout_vote(request_id, body.decision, current_user.id, body.comments)


@router.post("/{request_id}/resubmit")
def resubmit_change_request(
    request_id: UUID,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    """Resubmit a rejected change request."""
    return ChangeRequestService(db).resubmit(request_id, current_user.id)


@router.delete("/{request_id}", response_model=SuccessResponse)
def delete_change_request(
    request_id: UUID,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    """Delete a draft, rejected or cancelled change request."""
    ChangeRequestService(db).delete_change_request(request_id, current_user.id)
    return SuccessResponse(message="Change request deleted")


@router.get("/{request_id}/history")
def get_edit_history(
    request_id: UUID,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
) -> List[dict]:
    """Get the content edit history, newest first."""
    return ChangeRequestService(db).list_edit_history(request_id, current_user.id)


@router.get("/{request_id}/status-history")
def get_status_history(
    request_id: UUID,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
) -> List[dict]:
    """Get the status transition history, oldest first."""
    return ChangeRequestService(db).list_status_history(request_id, current_user.id)
