"""Inline embedding of image resources into memo bodies.

Memos stores attachments as blobs in the ``resource`` table and notes refer to
them by URL. Imported notes are made self-contained by turning each image
blob into a ``data:`` URI and splicing a markdown image into the body, either
in place of the old reference or appended at the end.
"""
import base64
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern, Sequence, Tuple, Union

from memobridge.models.schema import Resource, ResourceRow

logger = logging.getLogger(__name__)

AnyResource = Union[Resource, ResourceRow]

# URL prefixes older Memos releases used to serve resources
LEGACY_PATH_FRAGMENTS = (
    "/o/r/",
    "/file/resources/",
    "/api/v1/resource/",
    "/resources/",
)

_IMAGE_LABEL = r"!\[[^\]]*\]"
_ANY_LABEL = r"!?\[[^\]]*\]"


def _target_containing(needle: str) -> str:
    """Regex for a ``(...)`` link target that holds ``needle`` and is not a data URI."""
    return r"\((?!data:)[^)]*?" + needle + r"[^)]*\)"


def to_data_uri(resource: AnyResource) -> Optional[str]:
    """Encode an image resource's payload as a ``data:`` URI.

    Returns:
        The URI, or None for non-image resources and resources without payload.
    """
    if not resource.is_image or not resource.blob:
        return None
    encoded = base64.b64encode(resource.blob).decode("ascii")
    return f"data:{resource.type};base64,{encoded}"


def build_reference(resource: AnyResource) -> Optional[str]:
    """Build the inline markdown image for a resource.

    The label is the filename suffixed with the resource id, so two resources
    that share a filename still get distinct references.
    """
    data_uri = to_data_uri(resource)
    if data_uri is None:
        return None
    filename = re.sub(r"[\[\]]", "", resource.filename or "image")
    return f"![{filename}_{resource.id}]({data_uri})"


def _match_uid(resource: AnyResource) -> Optional[Pattern]:
    if not resource.uid:
        return None
    return re.compile(_ANY_LABEL + _target_containing(re.escape(resource.uid)))


def _match_filename(resource: AnyResource) -> Optional[Pattern]:
    if not resource.filename:
        return None
    filename = re.escape(resource.filename)
    # filename in the target, or an image labelled with the filename
    return re.compile(
        _IMAGE_LABEL + _target_containing(filename)
        + r"|!\[" + filename + r"\]" + _target_containing("")
    )


def _match_legacy_path(resource: AnyResource) -> Optional[Pattern]:
    fragments = "|".join(re.escape(f) for f in LEGACY_PATH_FRAGMENTS)
    keys = [re.escape(str(resource.id))]
    if resource.uid:
        keys.append(re.escape(resource.uid))
    needle = r"(?:" + fragments + r")(?:" + "|".join(keys) + r")(?![\w-])"
    return re.compile(_IMAGE_LABEL + _target_containing(needle))


@dataclass(frozen=True)
class ReferenceMatcher:
    """One way of finding an existing reference to a resource in a body."""

    name: str
    build: Callable[[AnyResource], Optional[Pattern]]

    def pattern_for(self, resource: AnyResource) -> Optional[Pattern]:
        return self.build(resource)


# Tried in this order; the first one that matches wins
DEFAULT_MATCHERS: Tuple[ReferenceMatcher, ...] = (
    ReferenceMatcher("uid", _match_uid),
    ReferenceMatcher("filename", _match_filename),
    ReferenceMatcher("legacy_path", _match_legacy_path),
)


@dataclass
class MaterializedBody:
    """Result of embedding resources into one body."""

    content: str
    embedded: int = 0
    replaced: int = 0
    appended: int = 0


def materialize(
    content: str,
    resources: Sequence[AnyResource],
    matchers: Sequence[ReferenceMatcher] = DEFAULT_MATCHERS,
) -> MaterializedBody:
    """Embed every image resource with a payload into ``content``.

    For each resource, the first matcher that finds a prior reference has
    that reference (first occurrence only) replaced with the inline image.
    When nothing matches the image is appended after a blank line, unless the
    exact reference is already in the body. Running this again on its own
    output changes nothing.

    Args:
        content: Memo body.
        resources: Resources owned by the memo, in any order.
        matchers: Reference matchers in priority order.

    Returns:
        MaterializedBody with the new content and counters.
    """
    result = MaterializedBody(content=content or "")

    for resource in resources:
        reference = build_reference(resource)
        if reference is None:
            continue
        result.embedded += 1

        if reference in result.content:
            continue

        replaced = False
        for matcher in matchers:
            pattern = matcher.pattern_for(resource)
            if pattern is None:
                continue
            new_content, count = pattern.subn(
                lambda _m: reference, result.content, count=1
            )
            if count:
                logger.debug(
                    f"Replaced {matcher.name} reference to resource {resource.id}"
                )
                result.content = new_content
                result.replaced += 1
                replaced = True
                break

        if not replaced:
            body = result.content.rstrip()
            result.content = f"{body}\n\n{reference}" if body else reference
            result.appended += 1

    return result


def embedded_references(content: str) -> List[str]:
    """List the inline ``data:`` image references already present in a body."""
    return re.findall(_IMAGE_LABEL + r"\(data:[^)]*\)", content or "")
