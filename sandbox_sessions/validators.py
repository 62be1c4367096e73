"""
Validation logic for sandbox token payloads.

Decoded payloads come from untrusted request headers, so their structure is
checked before they are turned into metadata.
"""

from django.core.exceptions import ValidationError
from django.utils.translation import gettext_lazy as _


def validate_metadata(value):
    """
    Ensures that a decoded payload has the shape produced by the encoder.

    ``repo`` must be a non-empty alias or a non-empty list of them, and
    ``owner`` a non-empty session reference.
    """
    if not isinstance(value, dict):
        raise ValidationError(
            _("Metadata must be a dictionary."), code="invalid_metadata_type"
        )

    repo = value.get("repo")
    repos = repo if isinstance(repo, list) else [repo]
    if not repos or not all(isinstance(alias, str) and alias for alias in repos):
        raise ValidationError(_("Metadata has an invalid repo."), code="invalid_repo")

    owner = value.get("owner")
    if not isinstance(owner, str) or not owner:
        raise ValidationError(
            _("Metadata has an invalid owner."), code="invalid_owner"
        )
