"""
Demo data seeding (DEBUG only, see SEED_DEMO).
"""
from sqlalchemy.orm import Session

from procura.core.logging import get_logger
from procura.db.models import Customer, Organization, Supplier

logger = get_logger(__name__)


DEMO_SUPPLIERS = [
    {
        "company_name": "Baltic Freight Lines",
        "email": "bids@balticfreight.example",
        "capabilities": ["FTL", "LTL", "Temperature Controlled"],
        "certifications": ["ISO 9001", "GDP"],
        "service_types": ["road"],
        "reliability_score": 88.0,
        "quality_score": 84.0,
        "performance_score": 86.0,
    },
    {
        "company_name": "Rhine Barge & Rail",
        "email": "quotes@rhinebarge.example",
        "capabilities": ["Intermodal", "Bulk", "Hazmat"],
        "certifications": ["ISO 14001"],
        "service_types": ["rail", "inland_waterway"],
        "reliability_score": 79.0,
        "quality_score": 81.0,
        "performance_score": 77.0,
    },
    {
        "company_name": "SkyBridge Air Cargo",
        "email": "sales@skybridge.example",
        "capabilities": ["Express", "Temperature Controlled", "Dangerous Goods"],
        "certifications": ["IATA", "GDP"],
        "service_types": ["air"],
        "reliability_score": 91.0,
        "quality_score": 89.0,
        "performance_score": 90.0,
    },
    {
        "company_name": "Meridian Advisory Partners",
        "email": "proposals@meridian.example",
        "capabilities": ["Supply Chain Audit", "Customs Consulting"],
        "certifications": ["ISO 27001"],
        "service_types": ["consulting"],
    },
]

DEMO_CUSTOMERS = [
    {"company_name": "Helvetia Pharma Distribution", "email": "logistics@helvetia.example"},
    {"company_name": "Nordic Home Retail", "email": "supply@nordichome.example"},
]


def seed_demo_data(db: Session) -> None:
    """Seed one demo tenant with customers and suppliers. Idempotent."""
    if db.query(Organization).first():
        logger.info("Database already seeded. Skipping...")
        return

    org = Organization(
        name="Northwind Logistics",
        slug="northwind",
        settings={"allow_publish_from_submitted": False},
    )
    db.add(org)
    db.flush()

    for data in DEMO_CUSTOMERS:
        db.add(Customer(organization_id=org.id, **data))

    for data in DEMO_SUPPLIERS:
        db.add(Supplier(organization_id=org.id, **data))

    db.flush()
    logger.info(
        f"Seeded organization '{org.slug}' with {len(DEMO_CUSTOMERS)} customers "
        f"and {len(DEMO_SUPPLIERS)} suppliers"
    )


if __name__ == "__main__":
    from procura.db.session import Base, build_engine, build_session_factory, get_db_context

    engine = build_engine()
    Base.metadata.create_all(bind=engine)
    with get_db_context(build_session_factory(engine)) as session:
        seed_demo_data(session)
