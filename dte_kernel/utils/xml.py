"""
XML helpers shared by the serializer, the signer and the response parser.

Namespaces:
    SII_NS  -- http://www.sii.cl/SiiDte, default namespace of DTE / EnvioDTE
    DS_NS   -- XML-DSig namespace

Every parser built here disables entity resolution and network access;
documents coming back from the authority are untrusted input.
"""

import copy
import re

from lxml import etree

SII_NS = "http://www.sii.cl/SiiDte"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

C14N_ALGORITHM = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
RSA_SHA1_ALGORITHM = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
SHA1_ALGORITHM = "http://www.w3.org/2000/09/xmldsig#sha1"
ENVELOPED_TRANSFORM = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

_BETWEEN_TAGS = re.compile(r">\s+<")


def safe_parser(remove_blank_text: bool = False) -> etree.XMLParser:
    return etree.XMLParser(
        remove_blank_text=remove_blank_text,
        resolve_entities=False,
        no_network=True,
        huge_tree=False,
    )


def parse(data: bytes | str, remove_blank_text: bool = False) -> etree._Element:
    """Parse untrusted XML.  Raises etree.XMLSyntaxError when malformed."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return etree.fromstring(data, parser=safe_parser(remove_blank_text))


def c14n(element: etree._Element) -> bytes:
    """
    Inclusive C14N 1.0 without comments, as XML-DSig references it.

    A nested element is serialized from a detached copy that declares every
    namespace in scope at its original position.
    """
    if element.getparent() is not None:
        element = _detached(element)
    return etree.tostring(element, method="c14n", with_comments=False)


def _detached(element: etree._Element) -> etree._Element:
    detached = etree.Element(element.tag, attrib=dict(element.attrib), nsmap=element.nsmap)
    detached.text = element.text
    for child in element:
        detached.append(copy.deepcopy(child))
    return detached


def sii(tag: str) -> str:
    return f"{{{SII_NS}}}{tag}"


def ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def local_name(element: etree._Element) -> str:
    return etree.QName(element).localname


def requalify(element: etree._Element, namespace: str | None) -> etree._Element:
    """
    Move element and all its descendants into namespace (None = no namespace).

    Works in place and returns the same element.  cleanup_namespaces drops
    declarations left unused.
    """
    for node in element.iter():
        if not isinstance(node.tag, str):
            continue
        name = etree.QName(node).localname
        node.tag = f"{{{namespace}}}{name}" if namespace else name
    etree.cleanup_namespaces(element)
    return element


def flatten(element: etree._Element) -> str:
    """
    Single-line text form of element with inter-tag whitespace removed.

    This is the byte source the SII hashes for a TED stamp (after
    ISO-8859-1 encoding).
    """
    text = etree.tostring(element, encoding="unicode", with_tail=False)
    return _BETWEEN_TAGS.sub("><", text).strip()


def element_path(element: etree._Element) -> str:
    """Slash-separated local-name path from the root, e.g. /DTE/Documento/Detalle[2]."""
    parts = []
    node = element
    while node is not None:
        name = local_name(node)
        parent = node.getparent()
        if parent is not None:
            same = [child for child in parent if isinstance(child.tag, str) and local_name(child) == name]
            if len(same) > 1:
                name = f"{name}[{same.index(node) + 1}]"
        parts.append(name)
        node = parent
    return "/" + "/".join(reversed(parts))
