from __future__ import annotations

from datetime import datetime
from pathlib import PurePath
import re

from .errors import NameMismatchError

DEFAULT_NAME_TEMPLATE = "{namespace}_{release}_{pvc}_{date}.tar.gz"
DATE_FORMAT = "%Y%m%d-%H%M%S"

_NAMESPACE = "{namespace}"
_RELEASE = "{release}"
_PVC = "{pvc}"
_DATE = "{date}"


def render_archive_name(
    template: str,
    *,
    namespace: str,
    release: str,
    claim_name: str,
    now: datetime | None = None,
) -> str:
    date = (now or datetime.now()).strftime(DATE_FORMAT)
    return (
        template.replace(_NAMESPACE, namespace)
        .replace(_RELEASE, release)
        .replace(_PVC, claim_name)
        .replace(_DATE, date)
    )


def archive_name_pattern(template: str, *, namespace: str, release: str) -> re.Pattern[str]:
    pattern = re.escape(template)
    pattern = pattern.replace(re.escape(_NAMESPACE), re.escape(namespace))
    pattern = pattern.replace(re.escape(_RELEASE), re.escape(release))
    pattern = pattern.replace(re.escape(_PVC), "(.+?)")
    pattern = pattern.replace(re.escape(_DATE), ".+")
    return re.compile(f"^{pattern}$")


def parse_claim_name(archive: str, template: str, *, namespace: str, release: str) -> str:
    """Return the claim name encoded in an archive path or remote key."""
    if _PVC not in template:
        raise NameMismatchError(f"name template '{template}' has no {_PVC} placeholder")

    filename = PurePath(archive).name
    match = archive_name_pattern(template, namespace=namespace, release=release).match(filename)
    if match is None:
        raise NameMismatchError(
            f"archive name '{filename}' does not match template '{template}' "
            f"for namespace '{namespace}' and release '{release}'"
        )
    return match.group(1)


def remote_prefix(template: str, *, namespace: str, release: str, claim_name: str) -> str:
    prefix = template.replace(_NAMESPACE, namespace).replace(_RELEASE, release).replace(_PVC, claim_name)
    index = prefix.find(_DATE)
    if index >= 0:
        prefix = prefix[:index]
    return prefix
