import uuid
from datetime import date, datetime, time, timedelta

from sqlmodel import Session, select

from db import engine
from models import Customer, CustomerSession, Slot, SlotType

DEMO_EMPLOYEE_ID = uuid.UUID("6f1c2b4e-8a4d-4c1e-9b7a-3f2d1e0c9a85")


def seed_database(employee_id: uuid.UUID = DEMO_EMPLOYEE_ID, today: date | None = None):
    """Seed next week with slots, three customers and two sessions."""
    with Session(engine) as session:
        # Check if data already exists
        existing = session.exec(select(Slot).where(Slot.employee_id == employee_id)).first()
        if existing:
            print("Database already has data, skipping seed.")
            return

        customers = [
            Customer(first_name="Alice", last_name="Johnson", email="alice@example.com", phone_number="555-0101"),
            Customer(first_name="Bob", last_name="Smith", email="bob@example.com", phone_number="555-0102"),
            Customer(first_name="Carol", last_name="Davis", email="carol@example.com"),
        ]
        session.add_all(customers)

        today = today or date.today()
        monday = today + timedelta(days=7 - today.weekday())
        slots = []
        for offset in range(5):  # Monday to Friday
            day = monday + timedelta(days=offset)
            for hour, minute, duration in ((9, 0, 60), (10, 30, 30), (14, 0, 45)):
                slots.append(
                    Slot(
                        employee_id=employee_id,
                        start_time=datetime.combine(day, time(hour, minute)),
                        duration=duration,
                    )
                )
        session.add_all(slots)

        sessions = []
        for slot, customer in ((slots[0], customers[0]), (slots[4], customers[1])):
            slot.type = SlotType.BOOKED
            sessions.append(
                CustomerSession(
                    slot_id=slot.id,
                    employee_id=employee_id,
                    customer_id=customer.id,
                    start_time=slot.start_time,
                    message=f"First session with {customer.first_name}",
                )
            )
        session.add_all(sessions)
        session.commit()
        print(f"Seeded database with {len(slots)} slots and {len(sessions)} sessions for {employee_id}.")


if __name__ == "__main__":
    from db import create_db_and_tables

    create_db_and_tables()
    seed_database()
