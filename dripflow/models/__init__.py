from dripflow.models.audit_log import AuditLog
from dripflow.models.facts import (
    Attendance,
    EngagementScore,
    PassOwnership,
    PassProduct,
    Purchase,
    Recipient,
)
from dripflow.models.segment import AudienceSegment
from dripflow.models.campaign import (
    Campaign,
    CampaignAudience,
    CampaignSend,
    CampaignStep,
)
