"""
/api/v1 email set and email endpoints.
Intake, resets, winner designation, field overrides and set deletion.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from mailfin.dependencies import get_db, verify_api_key
from mailfin.errors import NotFound
from mailfin.models.tables import EmailSet
from mailfin.pipeline.emails import (
    create_email_set,
    delete_email_set,
    reprocess_email,
    reset_emails,
    set_field_overrides,
    set_winner,
    store_email,
)
from mailfin.schemas.emails import (
    DeleteSetResponse,
    EmailCreate,
    EmailResponse,
    EmailSetCreate,
    EmailSetResponse,
    FieldOverridesRequest,
    FieldOverridesResponse,
    ResetEmailsRequest,
    ResetEmailsResponse,
    WinnerRequest,
    WinnerResponse,
)

router = APIRouter(prefix="/api/v1", tags=["emails"], dependencies=[Depends(verify_api_key)])


@router.post("/sets", response_model=EmailSetResponse, status_code=status.HTTP_201_CREATED)
async def create_set(request: EmailSetCreate, session: AsyncSession = Depends(get_db)):
    email_set = await create_email_set(session, request.name, request.description)
    await session.commit()
    return email_set


@router.get("/sets/{set_id}", response_model=EmailSetResponse)
async def get_set(set_id: str, session: AsyncSession = Depends(get_db)):
    email_set = await session.get(EmailSet, set_id)
    if email_set is None:
        raise NotFound("Email set", set_id)
    return email_set


@router.post("/sets/{set_id}/emails", response_model=EmailResponse, status_code=status.HTTP_201_CREATED)
async def add_email(set_id: str, request: EmailCreate, session: AsyncSession = Depends(get_db)):
    """Store an email in the set. Identical content is not stored twice."""
    if await session.get(EmailSet, set_id) is None:
        raise NotFound("Email set", set_id)
    email, created = await store_email(session, set_id, **request.model_dump())
    await session.commit()
    response = EmailResponse.model_validate(email)
    response.created = created
    return response


@router.delete("/sets/{set_id}", response_model=DeleteSetResponse)
async def delete_set(set_id: str, session: AsyncSession = Depends(get_db)):
    """Delete a set with its emails, runs, transactions and QA data."""
    result = await delete_email_set(session, set_id)
    await session.commit()
    return result


@router.post("/emails/reset", response_model=ResetEmailsResponse)
async def reset(request: ResetEmailsRequest, session: AsyncSession = Depends(get_db)):
    result = await reset_emails(
        session,
        email_ids=request.email_ids,
        set_id=request.set_id,
        run_id=request.run_id,
        delete_transactions=request.delete_transactions,
    )
    await session.commit()
    return result


@router.post("/emails/{email_id}/reprocess", response_model=ResetEmailsResponse)
async def reprocess(
    email_id: str,
    run_id: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_db),
):
    """Put one email back to pending, dropping its transactions from `run_id`."""
    result = await reprocess_email(session, email_id, run_id=run_id)
    await session.commit()
    return result


@router.put("/emails/{email_id}/winner", response_model=WinnerResponse)
async def put_winner(email_id: str, request: WinnerRequest, session: AsyncSession = Depends(get_db)):
    email = await set_winner(session, email_id, request.transaction_id)
    await session.commit()
    return WinnerResponse(email_id=email.id, winner_transaction_id=email.winner_transaction_id)


@router.put("/emails/{email_id}/overrides", response_model=FieldOverridesResponse)
async def put_overrides(email_id: str, request: FieldOverridesRequest, session: AsyncSession = Depends(get_db)):
    email = await set_field_overrides(session, email_id, request.overrides)
    await session.commit()
    return FieldOverridesResponse(email_id=email.id, field_overrides=email.field_overrides)
