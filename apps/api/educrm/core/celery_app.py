import logging
import uuid

from celery import Celery

from educrm.core.config import get_settings
from educrm.core.database import SessionLocal

settings = get_settings()
logger = logging.getLogger("educrm.worker")

celery_app = Celery("educrm_api", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name="educrm.tasks.enrich_lead", ignore_result=True)
def enrich_lead_task(lead_id: str) -> bool:
    from educrm.crm.service import LeadEnrichmentService

    session = SessionLocal()
    try:
        enriched = LeadEnrichmentService().enrich(session, uuid.UUID(lead_id))
    finally:
        session.close()
    logger.info("lead.enrichment_task_done", extra={"lead_id": lead_id, "enriched": enriched})
    return enriched
