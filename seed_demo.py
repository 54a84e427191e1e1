"""
seed_demo.py — Demo data: staff, templates, escalation ladder, assets
Run: python seed_demo.py
"""
import asyncio
from datetime import date

from sqlalchemy import select, func

from biomed.db.session import async_session, init_db
from biomed.db.models import User, UserRole, Asset
from biomed.services.template_service import seed_default_templates
from biomed.services.escalation_service import seed_default_rules


USERS = [
    ("Dana Whitfield", "dana.whitfield@hospital.example", UserRole.ADMIN),
    ("Ravi Menon", "ravi.menon@hospital.example", UserRole.MANAGER),
    ("Lena Ortiz", "lena.ortiz@hospital.example", UserRole.ENGINEER),
    ("Tom Becker", None, UserRole.TECHNICIAN),
]

ASSETS = [
    # name, equipment_type, manufacturer, serial, department, purchase_date
    ("ICU Ventilator 1", "Ventilator", "Getinge", "SV-300-0142", "ICU", date(2023, 3, 14)),
    ("ICU Ventilator 2", "Ventilator", "Getinge", "SV-300-0187", "ICU", date(2023, 9, 2)),
    ("Ward Monitor A", "Patient Monitor", "Philips", "MX450-88121", "Cardiology", date(2024, 1, 1)),
    ("ER Defibrillator", "Defibrillator", "Zoll", "AR16J0044", "Emergency", date(2022, 11, 20)),
    ("Infusion Pump 07", "Infusion Pump", "B. Braun", "IP-SP-5571", "Oncology", date(2024, 2, 29)),
    ("Dialysis Unit 3", "Dialysis Machine", "Fresenius", "FR-5008-301", "Nephrology", date(2021, 6, 10)),
]


async def seed():
    await init_db()
    async with async_session() as db:
        asset_count = (await db.execute(select(func.count(Asset.id)))).scalar()
        if asset_count > 0:
            print(f"Already seeded ({asset_count} assets). Skipping.")
            return

        print("Seeding demo data...")

        for full_name, email, role in USERS:
            db.add(User(full_name=full_name, email=email, role=role))
        await db.flush()
        print(f"  ✅ {len(USERS)} users")

        templates = await seed_default_templates(db)
        print(f"  ✅ {templates} maintenance templates")

        rules = await seed_default_rules(db)
        print(f"  ✅ {rules} escalation rules")

        for name, equipment_type, manufacturer, serial, department, purchased in ASSETS:
            db.add(Asset(
                name=name,
                equipment_type=equipment_type,
                manufacturer=manufacturer,
                serial_number=serial,
                department=department,
                purchase_date=purchased,
            ))
        # no template for dialysis machines: the scheduler logs and skips it
        print(f"  ✅ {len(ASSETS)} assets")

        await db.commit()
        print("Done. Run `python -m scheduler.tasks` to start the sweeps.")


if __name__ == "__main__":
    asyncio.run(seed())
