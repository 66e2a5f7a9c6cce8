"""
Seed demo procurement data for the intelligence endpoints.
Creates 1 company, 3 vendors, 3 items, eight weeks of RFQs, quotes,
purchase orders, deliveries and price history, then prints a demo token.
Run: python -m scripts.seed_demo_data
"""
import os
import sys
from datetime import timedelta

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from procura.db.session import SessionLocal
from procura.db.models import (
    Company, Vendor, Item, RFQ, RFQItem, Quote, PurchaseOrder, Delivery, PriceHistory,
    RFQStatus, QuoteStatus, POStatus, DeliveryStatus, PriceSource,
)
from procura.core.security import create_access_token
from procura.core.timeutils import utcnow

WEEKS = 8

VENDORS = [
    {
        "name": "PharmaChem Supplies",
        "email": "orders@pharmachem.example.com",
        "gstin": "27AABCP1234F1Z5",
        "category": "API",
        "materials_supplied": ["paracetamol", "ibuprofen"],
    },
    {
        "name": "BioLabs Excipients",
        "email": "supply@biolabs.example.com",
        "gstin": "29AACCB5678K1Z2",
        "category": "Excipient",
        "materials_supplied": ["microcrystalline cellulose", "lactose"],
    },
    {
        "name": "MedPack Solutions",
        "email": "sales@medpack.example.com",
        "gstin": "24AADCM9012Q1Z8",
        "category": "Packaging",
        "materials_supplied": ["blister foil"],
    },
]

# name, sku, category, unit, base price per unit, weekly drift
ITEMS = [
    ("Paracetamol IP", "API-PCM-001", "API", "kg", 420.0, 4.0),
    ("Microcrystalline Cellulose", "EXC-MCC-101", "Excipient", "kg", 180.0, -1.5),
    ("Alu-Alu Blister Foil", "PKG-ALU-020", "Packaging", "roll", 2600.0, 0.0),
]

# vendor index -> (price multiplier, response days, delivery days late)
VENDOR_PROFILE = {
    0: (1.00, 1, 0),
    1: (0.95, 2, 1),
    2: (1.25, 5, 6),
}


def seed_demo_data():
    """Create demo data for the intelligence endpoints."""
    db = SessionLocal()

    try:
        # 1. Check/create company
        company = db.query(Company).filter(Company.slug == "acme-pharma").first()
        if not company:
            company = Company(
                name="Acme Pharma",
                slug="acme-pharma",
                gstin="27AAACA0000A1Z5",
                settings={"currency": "INR"},
            )
            db.add(company)
            db.flush()
            print(f"✅ Created company: {company.name} (ID: {company.id})")
        else:
            print(f"✓ Company exists: {company.name} (ID: {company.id})")

        # 2. Vendors
        vendors = []
        for vd in VENDORS:
            vendor = db.query(Vendor).filter(
                Vendor.company_id == company.id,
                Vendor.name == vd["name"],
            ).first()
            if not vendor:
                vendor = Vendor(company_id=company.id, **vd)
                db.add(vendor)
                db.flush()
                print(f"✅ Created vendor: {vendor.name}")
            vendors.append(vendor)

        # 3. Items
        items = []
        for name, sku, category, unit, _, _ in ITEMS:
            item = db.query(Item).filter(Item.company_id == company.id, Item.sku == sku).first()
            if not item:
                item = Item(company_id=company.id, name=name, sku=sku, category=category, unit=unit)
                db.add(item)
                db.flush()
                print(f"✅ Created item: {item.name}")
            items.append(item)

        # 4. Trading history, only on first run
        has_history = db.query(RFQ).filter(RFQ.company_id == company.id).first() is not None
        if has_history:
            print("✓ Trading history already exists")
        else:
            counts = seed_history(db, company, vendors, items)
            print(
                f"✅ Created {counts['rfqs']} RFQs, {counts['quotes']} quotes, "
                f"{counts['orders']} purchase orders, {counts['prices']} price points"
            )

        db.commit()

        token = create_access_token(
            {"sub": "1", "company_id": company.id, "role": "operator"},
            expires_delta=timedelta(days=7),
        )

        print("\n" + "=" * 60)
        print("DEMO DATA SEED COMPLETE")
        print("=" * 60)
        print(f"""
Summary:
- Company: {company.name} (ID: {company.id})
- Vendors: {len(vendors)} ({", ".join(v.name for v in vendors)})
- Items: {len(items)}
- History: {WEEKS} weeks of quotes, orders and prices

Operator token (7 days):
{token}

Try:
  GET  /api/ai/vendor-scores
  POST /api/ai/forecast/bulk
  POST /api/ai/vendor-recommendation  {{"item_ids": [{items[0].id}], "urgency": "high"}}
""")

    except Exception as e:
        db.rollback()
        print(f"❌ Error: {e}")
        raise
    finally:
        db.close()


def seed_history(db, company, vendors, items) -> dict:
    """One RFQ per item per week, quoted by every vendor; the cheapest quote is ordered."""
    now = utcnow()
    counts = {"rfqs": 0, "quotes": 0, "orders": 0, "prices": 0}

    for week in range(WEEKS, 0, -1):
        asked = now - timedelta(days=week * 7)

        for item_index, item in enumerate(items):
            _, sku, _, _, base, drift = ITEMS[item_index]
            unit_price = base + drift * (WEEKS - week)
            quantity = 100.0

            rfq = RFQ(
                company_id=company.id,
                rfq_number=f"RFQ-{company.id}-{sku}-W{week:02d}",
                title=f"{item.name} week -{week}",
                status=RFQStatus.CLOSED,
                created_at=asked,
            )
            db.add(rfq)
            db.flush()
            db.add(RFQItem(rfq_id=rfq.id, item_id=item.id, quantity=quantity))
            counts["rfqs"] += 1

            quotes = []
            for vendor_index, vendor in enumerate(vendors):
                multiplier, response_days, _ = VENDOR_PROFILE[vendor_index]
                base_price = round(unit_price * multiplier * quantity, 2)
                gst = round(base_price * 0.18, 2)
                freight = 500.0
                quote = Quote(
                    rfq_id=rfq.id,
                    vendor_id=vendor.id,
                    base_price=base_price,
                    gst_amount=gst,
                    freight_cost=freight,
                    landed_cost=Quote.compute_landed_cost(base_price, gst, freight),
                    status=QuoteStatus.SUBMITTED,
                    submitted_at=asked + timedelta(days=response_days),
                )
                db.add(quote)
                quotes.append((vendor_index, vendor, quote))
                counts["quotes"] += 1
            db.flush()

            winner_index, winner, winning_quote = min(quotes, key=lambda q: q[2].landed_cost)
            for _, _, quote in quotes:
                quote.status = QuoteStatus.APPROVED if quote is winning_quote else QuoteStatus.REJECTED

            po = PurchaseOrder(
                company_id=company.id,
                vendor_id=winner.id,
                quote_id=winning_quote.id,
                po_number=f"PO-{company.id}-{sku}-W{week:02d}",
                status=POStatus.COMPLETED,
                total_amount=winning_quote.landed_cost,
                created_at=asked + timedelta(days=3),
            )
            db.add(po)
            db.flush()
            counts["orders"] += 1

            expected = po.created_at + timedelta(days=7)
            _, _, days_late = VENDOR_PROFILE[winner_index]
            db.add(Delivery(
                po_id=po.id,
                status=DeliveryStatus.DELIVERED,
                delivery_date=expected,
                received_date=expected + timedelta(days=days_late),
            ))

            db.add(PriceHistory(
                company_id=company.id,
                item_id=item.id,
                vendor_id=winner.id,
                quote_id=winning_quote.id,
                po_id=po.id,
                price=round(winning_quote.base_price / quantity, 2),
                source=PriceSource.PURCHASE_ORDER,
                recorded_at=po.created_at,
            ))
            counts["prices"] += 1

    return counts


if __name__ == "__main__":
    seed_demo_data()
