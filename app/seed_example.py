from sqlalchemy import select

from app.db import SessionLocal, engine
from app.models import Base, Location, LocationType, Principal, PrincipalRole, ProductVariant

DEMO_VARIANTS = [
    ('TEE-BLK-M', 'Black Tee / M', '012345678905', None),
    ('TEE-BLK-L', 'Black Tee / L', '012345678912', None),
    ('MUG-WHT-12', 'White Mug 12oz', None, None),
    ('CAP-NVY', 'Navy Cap', None, 'VENDOR-CAP-01'),
]


def seed(session_factory=SessionLocal) -> None:
    with session_factory() as db:
        for name, location_type, barcode in (
            ('Dock 1', LocationType.RECEIVING, 'LOC-DOCK-1'),
            ('Aisle A', LocationType.STORAGE, 'LOC-A-01'),
        ):
            location = db.execute(select(Location).where(Location.barcode == barcode)).scalar_one_or_none()
            if not location:
                db.add(Location(name=name, type=location_type, barcode=barcode, active=True))

        for sku, name, upc, barcode in DEMO_VARIANTS:
            variant = db.execute(select(ProductVariant).where(ProductVariant.sku == sku)).scalar_one_or_none()
            if not variant:
                db.add(ProductVariant(sku=sku, name=name, upc=upc, barcode=barcode, active=True))

        for username, role in (
            ('manager', PrincipalRole.MANAGER),
            ('receiver1', PrincipalRole.OPERATOR),
            ('receiver2', PrincipalRole.OPERATOR),
        ):
            principal = db.execute(select(Principal).where(Principal.username == username)).scalar_one_or_none()
            if not principal:
                db.add(Principal(username=username, display_name=username.title(), role=role, active=True))

        db.commit()


if __name__ == '__main__':
    Base.metadata.create_all(bind=engine)
    seed()
    print('Seed data inserted/verified.')
