from app.crm.models import CRMDeal, CRMPipeline

__all__ = [
    "CRMDeal",
    "CRMPipeline",
]
