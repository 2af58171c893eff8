"""
Trip contact database model.

Snapshot of a trusted contact taken when the trip starts. Editing the
address book afterwards does not change who a running trip notifies.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint
from backend.app.db.session import Base


class TripContact(Base):
    __tablename__ = "trip_contacts"
    __table_args__ = (
        UniqueConstraint("trip_id", "contact_id", name="uq_trip_contacts_trip_contact"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    trip_id = Column(String(32), ForeignKey("trips.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    # Address book entry this was copied from
    contact_id = Column(Integer, nullable=False)

    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    contact_user_id = Column(Integer, nullable=True)  # App user, reachable by push

    def __repr__(self):
        return f"<TripContact(trip_id={self.trip_id}, contact_id={self.contact_id}, name='{self.name}')>"
