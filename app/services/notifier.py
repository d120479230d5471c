"""Out-of-band notifications about integrations"""

import logging

from app.models import JiraIntegration

logger = logging.getLogger(__name__)


class Notifier:
    """Default notifier: writes to the log.

    Deployments that deliver e-mail or chat messages subclass this and pass
    the instance to SyncService.
    """

    def integration_deactivated(self, integration: JiraIntegration, reason: str) -> None:
        recipient = integration.owner_email or "<no owner e-mail>"
        logger.warning(
            f"Jira integration {integration.id} ({integration.jira_domain}) deactivated: {reason}. "
            f"Notify {recipient}"
        )
