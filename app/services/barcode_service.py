from __future__ import annotations

import base64
import re
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models import ProductVariant, ReceivingLine

GENERATED_PREFIX = 'WMS'
MAX_GENERATION_ATTEMPTS = 20

Extractor = Callable[[ReceivingLine, ProductVariant | None], str | None]

BARCODE_CANDIDATES: tuple[tuple[str, Extractor], ...] = (
    ('sku', lambda line, variant: line.sku),
    ('generated_barcode', lambda line, variant: line.generated_barcode),
    ('upc', lambda line, variant: variant.upc if variant else None),
    ('barcode', lambda line, variant: variant.barcode if variant else None),
    ('variant_sku', lambda line, variant: variant.sku if variant else None),
)


@dataclass(frozen=True)
class Matched:
    line: ReceivingLine
    matched_on: str


@dataclass(frozen=True)
class KnownElsewhere:
    variant: ProductVariant


@dataclass(frozen=True)
class Unknown:
    token: str


def generate_barcode(sku: str) -> str:
    encoded = base64.b64encode(sku.encode('utf-8')).decode('ascii')[:6].upper()
    stem = re.sub(r'[^A-Z0-9]', 'X', encoded)
    suffix = uuid.uuid4().hex[:4].upper()
    return f'{GENERATED_PREFIX}-{stem}-{suffix}'


def _barcode_in_use(db: Session, code: str) -> bool:
    on_line = db.execute(select(ReceivingLine.id).where(ReceivingLine.generated_barcode == code).limit(1)).first()
    if on_line:
        return True
    on_variant = db.execute(
        select(ProductVariant.id).where(or_(ProductVariant.barcode == code, ProductVariant.upc == code)).limit(1)
    ).first()
    return on_variant is not None


def generate_unique_barcode(db: Session, sku: str, taken: set[str] | None = None) -> str:
    taken = taken if taken is not None else set()
    for _ in range(MAX_GENERATION_ATTEMPTS):
        code = generate_barcode(sku)
        if code in taken or _barcode_in_use(db, code):
            continue
        taken.add(code)
        return code
    raise RuntimeError(f'Could not generate a unique barcode for {sku}')


def line_codes(line: ReceivingLine, variant: ProductVariant | None) -> list[tuple[str, str]]:
    codes: list[tuple[str, str]] = []
    for name, extract in BARCODE_CANDIDATES:
        value = extract(line, variant)
        if value:
            codes.append((name, value))
    return codes


def match_line(
    lines: Iterable[ReceivingLine],
    variants_by_id: dict[int, ProductVariant],
    token: str,
) -> Matched | None:
    for line in lines:
        variant = variants_by_id.get(line.product_variant_id) if line.product_variant_id else None
        for name, value in line_codes(line, variant):
            if value == token:
                return Matched(line=line, matched_on=name)
    return None


def find_catalog_variant(db: Session, token: str) -> ProductVariant | None:
    return db.execute(
        select(ProductVariant)
        .where(
            or_(
                ProductVariant.upc == token,
                ProductVariant.barcode == token,
                ProductVariant.sku == token,
            )
        )
        .order_by(ProductVariant.id.asc())
        .limit(1)
    ).scalars().first()


def resolve_token(
    db: Session,
    *,
    lines: Iterable[ReceivingLine],
    variants_by_id: dict[int, ProductVariant],
    token: str,
) -> Matched | KnownElsewhere | Unknown:
    token = token.strip()
    matched = match_line(lines, variants_by_id, token)
    if matched:
        return matched
    variant = find_catalog_variant(db, token)
    if variant:
        return KnownElsewhere(variant=variant)
    return Unknown(token=token)


def build_barcode_lookup(
    lines: Iterable[ReceivingLine],
    variants_by_id: dict[int, ProductVariant],
) -> dict[str, dict]:
    lookup: dict[str, dict] = {}
    for line in lines:
        variant = variants_by_id.get(line.product_variant_id) if line.product_variant_id else None
        for _name, value in line_codes(line, variant):
            lookup.setdefault(value, {'line_id': line.id, 'sku': line.sku})
    return lookup
