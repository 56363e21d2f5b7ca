from app.models.audit import AuditLog
from app.crm.models import (
	CRMJob,
	CRMLead,
	CRMModuleSetting,
	CRMOpportunity,
	CRMPipeline,
	CRMPipelineStage,
	CRMPriority,
	CRMRecordTeamMember,
	CRMRoutingRule,
	CRMScoringRule,
	CRMScoringTemplate,
	CRMStageFieldRequirement,
	CRMStageHistory,
	CRMTeam,
)

__all__ = [
	"AuditLog",
	"CRMJob",
	"CRMLead",
	"CRMModuleSetting",
	"CRMOpportunity",
	"CRMPipeline",
	"CRMPipelineStage",
	"CRMPriority",
	"CRMRecordTeamMember",
	"CRMRoutingRule",
	"CRMScoringRule",
	"CRMScoringTemplate",
	"CRMStageFieldRequirement",
	"CRMStageHistory",
	"CRMTeam",
]
