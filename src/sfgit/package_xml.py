"""Reading the retrieved ``package.xml`` metadata index."""

from __future__ import annotations

import logging
from pathlib import Path

from lxml import etree

logger = logging.getLogger(__name__)

PACKAGE_FILE_NAME = "package.xml"
_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


class ManifestError(ValueError):
    """The retrieved manifest is missing data the pipeline needs."""


def read_package_description(package_dir: str | Path) -> str:
    """Return the ``Package/description`` text of ``package_dir/package.xml``.

    Raises :class:`ManifestError` when the file is missing, malformed or has
    no non-blank description.
    """
    path = Path(package_dir) / PACKAGE_FILE_NAME
    if not path.is_file():
        raise ManifestError(f"{path} was not found")
    try:
        tree = etree.parse(str(path), _PARSER)
    except (OSError, etree.XMLSyntaxError) as exc:
        raise ManifestError(f"{path} could not be parsed: {exc}") from exc

    root = tree.getroot()
    if etree.QName(root).localname != "Package":
        raise ManifestError(f"{path} is not a package manifest (root element <{root.tag}>)")

    nodes = root.xpath("./*[local-name()='description']")
    description = str(nodes[0].text or "").strip() if nodes else ""
    if not description:
        raise ManifestError(f"{path} has no description to use as the commit message")
    logger.debug("Read description from %s", path)
    return description
