from __future__ import annotations

import json
import secrets
from typing import Any, Optional

from billing_core.core.aws import sns_client
from billing_core.core.settings import S
from billing_core.services.audit import audit_event

REMINDER_MESSAGES = (
    "Your payment has failed. Please update your payment method.",
    "Reminder: Your subscription payment is still pending. Update now to avoid service interruption.",
    "Final notice: Your subscription will be canceled if payment is not received.",
)


def reminder_message(milestone: int) -> str:
    if 0 <= milestone < len(REMINDER_MESSAGES):
        return REMINDER_MESSAGES[milestone]
    return REMINDER_MESSAGES[0]


class Notifier:
    """Dunning reminders over SNS. Without a topic configured the reminder is only audited."""

    def __init__(self, topic_arn: Optional[str] = None, base_url: Optional[str] = None, sns: Any = None) -> None:
        self.topic_arn = S.dunning_sns_topic_arn if topic_arn is None else topic_arn
        self.base_url = (S.public_base_url if base_url is None else base_url).rstrip("/")
        self._sns = sns

    @property
    def sns(self) -> Any:
        if self._sns is None:
            self._sns = sns_client()
        return self._sns

    def send_reminder(
        self,
        user_id: str,
        milestone: int,
        *,
        subscription_id: Optional[str] = None,
        retry_url: Optional[str] = None,
    ) -> None:
        message = reminder_message(milestone)
        if self.topic_arn:
            self.sns.publish(
                TopicArn=self.topic_arn,
                Subject="Payment reminder",
                Message=json.dumps(
                    {
                        "user_id": user_id,
                        "subscription_id": subscription_id,
                        "milestone": milestone,
                        "message": message,
                        "retry_url": retry_url,
                    },
                    separators=(",", ":"),
                ),
                MessageAttributes={"user_id": {"DataType": "String", "StringValue": user_id}},
            )
        audit_event(
            "dunning_reminder_sent",
            user_id,
            outcome="success",
            milestone=milestone,
            subscription_id=subscription_id,
            channel="sns" if self.topic_arn else "audit",
        )

    def regenerate_retry_link(self, subscription_id: str) -> str:
        url = f"{self.base_url}/billing/retry/{subscription_id}?ref={secrets.token_urlsafe(12)}"
        audit_event("dunning_retry_link", subscription_id, outcome="success")
        return url
