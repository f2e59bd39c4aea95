from app.crm.models import (
	CRMActivity,
	CRMCompany,
	CRMContact,
	CRMDeal,
	CRMLead,
	CRMPipelineStage,
	CRMUser,
)

__all__ = [
	"CRMActivity",
	"CRMCompany",
	"CRMContact",
	"CRMDeal",
	"CRMLead",
	"CRMPipelineStage",
	"CRMUser",
]
