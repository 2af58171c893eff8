"""
Trusted Contact API Endpoints.

Travelers keep an address book of people to alert; trips snapshot the
contacts picked at start time.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List

from backend.app.core.dependencies import get_current_traveler_id
from backend.app.db.session import get_db
from backend.app.models.trusted_contact import TrustedContact
from backend.app.schemas.trusted_contact import TrustedContactCreate, TrustedContactResponse

router = APIRouter(prefix="/contacts", tags=["Trusted Contacts"])


@router.post("", response_model=TrustedContactResponse, status_code=status.HTTP_201_CREATED)
async def create_contact(
    contact_data: TrustedContactCreate,
    owner_id: int = Depends(get_current_traveler_id),
    db: AsyncSession = Depends(get_db)
):
    """
    Add a trusted contact.

    The contact needs a phone number, an e-mail address or an app user id,
    otherwise there is no way to alert them.
    """
    if not (contact_data.phone or contact_data.email or contact_data.contact_user_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A contact needs a phone, an email or a contact_user_id"
        )

    contact = TrustedContact(owner_id=owner_id, **contact_data.model_dump())
    db.add(contact)
    await db.commit()
    await db.refresh(contact)

    return contact


@router.get("", response_model=List[TrustedContactResponse])
async def list_contacts(
    owner_id: int = Depends(get_current_traveler_id),
    db: AsyncSession = Depends(get_db)
):
    """List the caller's trusted contacts, primary ones first."""
    result = await db.execute(
        select(TrustedContact)
        .where(TrustedContact.owner_id == owner_id)
        .order_by(TrustedContact.is_primary.desc(), TrustedContact.id)
    )
    return result.scalars().all()


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_contact(
    contact_id: int = Path(..., description="Contact ID"),
    owner_id: int = Depends(get_current_traveler_id),
    db: AsyncSession = Depends(get_db)
):
    """
    Remove a contact from the address book.

    Trips that already started keep their own copy of the contact.
    """
    result = await db.execute(
        select(TrustedContact).where(
            TrustedContact.id == contact_id,
            TrustedContact.owner_id == owner_id
        )
    )
    contact = result.scalar_one_or_none()

    if not contact:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Contact not found"
        )

    await db.delete(contact)
    await db.commit()
