"""Order confirmation emails sent through Amazon SES bulk templated sends."""

from __future__ import annotations

import json
from typing import Any, List, Mapping, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from . import data_manager, log
from .constants import MAX_BULK_DESTINATIONS


def create_ses_client(settings: data_manager.EmailSettings) -> Any:
    """Build an SES client for the configured region."""

    return boto3.client("ses", region_name=settings.region)


def chunk_users(
    users: Sequence[data_manager.UserRow],
    size: int = MAX_BULK_DESTINATIONS,
) -> List[List[data_manager.UserRow]]:
    """Split ``users`` into consecutive chunks of at most ``size``."""

    return [list(users[start:start + size]) for start in range(0, len(users), size)]


def _template_data(pickup_instructions: str | None) -> str:
    if not pickup_instructions:
        return json.dumps({})
    return json.dumps({"pickupInstructions": pickup_instructions})


def send_confirmation_emails(
    ses_client: Any,
    settings: data_manager.EmailSettings,
    users: Sequence[data_manager.UserRow],
    locations: Sequence[data_manager.LocationRow],
) -> List[str]:
    """Send the confirmation template to each user.

    Each recipient's template data carries the pickup instructions of their
    location; recipients whose location has none fall back to the default
    template data. One bulk send is issued per chunk of
    :data:`MAX_BULK_DESTINATIONS` recipients.

    Args:
        ses_client (Any): boto3 SES client (or a compatible stub).
        settings (data_manager.EmailSettings): Sender, template and
            configuration set.
        users (Sequence[data_manager.UserRow]): Recipients.
        locations (Sequence[data_manager.LocationRow]): Pickup locations.

    Returns:
        list[str]: Emails that were not accepted, either individually or
            because their whole chunk failed.
    """

    pickup_by_location: Mapping[str, str] = {
        location.name: location.pickup_instructions for location in locations
    }

    failed_sends: List[str] = []
    for chunk in chunk_users(users):
        destinations = [
            {
                "Destination": {"ToAddresses": [user.email]},
                "ReplacementTemplateData": _template_data(pickup_by_location.get(user.location)),
            }
            for user in chunk
        ]
        try:
            response = ses_client.send_bulk_templated_email(
                Source=settings.source,
                Template=settings.template,
                ConfigurationSetName=settings.configuration_set,
                Destinations=destinations,
                DefaultTemplateData=_template_data(settings.default_pickup_instructions),
            )
        except (BotoCoreError, ClientError) as exc:
            log.error("Failed to send bulk templated email to %d users: %s", len(chunk), exc)
            failed_sends.extend(user.email for user in chunk)
            continue

        statuses = response.get("Status", [])
        for index, user in enumerate(chunk):
            status = statuses[index] if index < len(statuses) else {}
            if status.get("Status") != "Success":
                log.error("Failed to send to user %s: %s", user.email, json.dumps(status))
                failed_sends.append(user.email)

    log.info("Sent confirmation emails to %d users (%d failed)", len(users), len(failed_sends))
    return failed_sends
