"""Resource kinds understood by the orchestration core."""

from __future__ import annotations

from enum import StrEnum


class ResourceType(StrEnum):
    """Closed set of provider resource kinds."""

    SECRET = "secret"
    IAM_ROLE = "iam_role"
    IAM_POLICY = "iam_policy"
    IAM_ROLE_POLICY_ATTACHMENT = "iam_role_policy_attachment"
    CONTAINER_REPOSITORY = "container_repository"
    CONTAINER_IMAGE = "container_image"
    CLUSTER = "cluster"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    TARGET_REGISTRATION = "target_registration"
    LISTENER = "listener"
    LISTENER_RULE = "listener_rule"
    CERTIFICATE = "certificate"
    CERTIFICATE_VALIDATION = "certificate_validation"
    DNS_ZONE = "dns_zone"
    DNS_RECORD = "dns_record"
    CONTAINER_SERVICE = "container_service"
    AUTOSCALING_TARGET = "autoscaling_target"
    AUTOSCALING_POLICY = "autoscaling_policy"

    @classmethod
    def parse(cls, value: str) -> ResourceType:
        try:
            return cls(value.strip().lower().replace("-", "_"))
        except ValueError:
            valid = ", ".join(sorted(member.value for member in cls))
            raise ValueError(f"Unknown resource type '{value}' (valid: {valid})") from None


# Types whose creation must be confirmed externally before dependents proceed
GATED_TYPES = frozenset(
    {
        ResourceType.CERTIFICATE_VALIDATION,
        ResourceType.TARGET_REGISTRATION,
    }
)
