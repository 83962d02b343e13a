"""
Rewrites relayed documents so every embedded reference resolves through the relay.

HTML goes through BeautifulSoup; CSS is rewritten lexically, one ``url(...)``
at a time. Anything else is passed through byte for byte.
"""

import logging
import re
from enum import Enum
from urllib.parse import quote, urljoin, urlparse

from bs4 import BeautifulSoup
from werkzeug.http import parse_options_header

from interceptor import FORM_MARKER, LINK_MARKER, SCRIPT_MARKER, generate_interceptor
from settings import RELAY_PATH

logger = logging.getLogger(__name__)

SKIP_PREFIXES = ('#', 'javascript:', 'data:', 'mailto:')

# Element -> attributes holding exactly one reference
ATTRIBUTE_RULES = {
    'a': ['href'],
    'link': ['href'],
    'script': ['src'],
    'img': ['src', 'data-src'],
    'source': ['src'],
    'iframe': ['src'],
    'video': ['src'],
    'audio': ['src'],
}

# Elements whose srcset holds a comma-separated candidate list
SRCSET_TAGS = ['img', 'source']

CSS_URL_PATTERN = re.compile(r'url\([\'"]?([^\'")]+)[\'"]?\)')
SRCSET_URL_PATTERN = re.compile(r'[\s,]*(\S+)')
META_REFRESH_URL_PATTERN = re.compile(r'(url\s*=\s*)([\'"]?)([^\'"]+)\2', re.IGNORECASE)


# --- URL classification ---

def relay_url(absolute_url):
    return f"{RELAY_PATH}?url={quote(absolute_url, safe='')}"


def resolve_url(reference, base_url):
    """
    Resolve reference against base_url.

    Returns the absolute URL, or None when the reference must be left alone:
    fragments, javascript:/data:/mailto: URLs, and anything that does not
    resolve to an absolute network URL.
    """
    if not reference:
        return None
    candidate = reference.strip()
    if not candidate or candidate.lower().startswith(SKIP_PREFIXES):
        return None
    try:
        absolute_url = urljoin(base_url, candidate)
        parsed = urlparse(absolute_url)
    except ValueError:
        logger.debug(f"Unresolvable reference left as-is: {reference!r}")
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return absolute_url


def rewrite_url(reference, base_url):
    """Relay form of reference, or reference unchanged if it is skipped."""
    absolute_url = resolve_url(reference, base_url)
    if absolute_url is None:
        return reference
    return relay_url(absolute_url)


def _srcset_candidates(srcset):
    # A candidate URL is a run of non-whitespace, so it may contain commas;
    # only a trailing comma, or one after the descriptor, ends the candidate.
    position = 0
    while True:
        match = SRCSET_URL_PATTERN.match(srcset, position)
        if not match:
            return
        url, position = match.group(1), match.end()
        if url.endswith(','):
            yield url.rstrip(','), ''
            continue
        end = srcset.find(',', position)
        if end == -1:
            end = len(srcset)
        yield url, srcset[position:end].strip()
        position = end + 1


def rewrite_srcset(srcset, base_url):
    if srcset.strip().lower().startswith('data:'):
        return srcset
    candidates = []
    for url, descriptor in _srcset_candidates(srcset):
        candidates.append(f"{rewrite_url(url, base_url)} {descriptor}".rstrip())
    return ', '.join(candidates)


# --- CSS ---

def rewrite_css(css, base_url):
    """
    Rewrite every url(...) in css to go through the relay.

    Purely lexical: occurrences inside comments are rewritten too, and
    @import "..." without url() is left alone.
    """
    def replacer(match):
        target = match.group(1).strip()
        if target.startswith(('data:', '#')):
            return match.group(0)
        absolute_url = resolve_url(target, base_url)
        if absolute_url is None:
            return match.group(0)
        return f"url('{relay_url(absolute_url)}')"

    return CSS_URL_PATTERN.sub(replacer, css)


# --- HTML ---

def _document_base(soup, base_url):
    # A <base href> changes how the page's relative references resolve. It is
    # removed afterwards so the relay's own root-relative URLs are not re-based.
    base_tag = soup.find('base', href=True)
    if base_tag is None:
        return base_url
    declared = resolve_url(base_tag['href'], base_url)
    del base_tag['href']
    return declared or base_url


def _rewrite_attribute(tag, attr, base_url):
    value = tag.get(attr)
    if not value or not value.strip():
        return
    absolute_url = resolve_url(value, base_url)
    if absolute_url is not None:
        tag[attr] = relay_url(absolute_url)


def _inject_interceptor(soup, base_url):
    script = soup.new_tag('script', attrs={SCRIPT_MARKER: 'true'})
    script.string = generate_interceptor(base_url)

    head = soup.head
    if head is None:
        head = soup.new_tag('head')
        if soup.html is not None:
            soup.html.insert(0, head)
        else:
            soup.insert(0, head)
    head.append(script)


def rewrite_html(html, base_url, encoding=None):
    """
    Rewrite every reference in an HTML document and inject the interception script.

    Args:
        html: document as str, or bytes (decoded using encoding, or sniffed)
        base_url: absolute URL the document was fetched from
        encoding: declared charset for a bytes document

    Returns:
        str: the serialized, rewritten document
    """
    if isinstance(html, bytes):
        soup = BeautifulSoup(html, 'html.parser', from_encoding=encoding)
    else:
        soup = BeautifulSoup(html, 'html.parser')

    base_url = _document_base(soup, base_url)

    for tag_name, attrs in ATTRIBUTE_RULES.items():
        for tag in soup.find_all(tag_name):
            for attr in attrs:
                _rewrite_attribute(tag, attr, base_url)

    # Skipped hrefs are marked too; the interceptor decides what to do with them
    for anchor in soup.find_all('a', href=True):
        if anchor['href'].strip():
            anchor[LINK_MARKER] = 'true'

    for tag in soup.find_all(SRCSET_TAGS, srcset=True):
        tag['srcset'] = rewrite_srcset(tag['srcset'], base_url)

    # A form without an action submits to the document itself
    for form in soup.find_all('form'):
        absolute_url = resolve_url(form.get('action') or base_url, base_url)
        if absolute_url is not None:
            form['action'] = relay_url(absolute_url)
            form[FORM_MARKER] = 'true'

    for meta in soup.find_all('meta', content=True):
        if meta.get('http-equiv', '').lower() == 'refresh':
            meta['content'] = META_REFRESH_URL_PATTERN.sub(
                lambda m: f"{m.group(1)}{m.group(2)}{rewrite_url(m.group(3), base_url)}{m.group(2)}",
                meta['content'],
            )

    for style_tag in soup.find_all('style'):
        original = style_tag.string
        if original:
            original.replace_with(type(original)(rewrite_css(str(original), base_url)))

    for tag in soup.find_all(style=True):
        tag['style'] = rewrite_css(tag['style'], base_url)

    _inject_interceptor(soup, base_url)

    return str(soup)


# --- Dispatch ---

class ContentKind(Enum):
    HTML = 'html'
    CSS = 'css'
    TEXT = 'text'
    BINARY = 'binary'

    @classmethod
    def from_content_type(cls, content_type):
        mimetype = parse_options_header(content_type or '')[0].lower()
        if mimetype == 'text/html':
            return cls.HTML
        if mimetype == 'text/css':
            return cls.CSS
        if (mimetype.startswith('text/')
                or mimetype in ('application/json', 'application/javascript', 'application/xml')
                or mimetype.endswith(('+json', '+xml'))):
            return cls.TEXT
        return cls.BINARY


def declared_charset(content_type):
    return parse_options_header(content_type or '')[1].get('charset')


def _rewrite_html_body(body, content_type, base_url):
    html = rewrite_html(body, base_url, encoding=declared_charset(content_type))
    return html.encode('utf-8'), 'text/html; charset=utf-8'


def _rewrite_css_body(body, content_type, base_url):
    charset = declared_charset(content_type) or 'utf-8'
    try:
        css = body.decode(charset, errors='replace')
    except LookupError:
        css = body.decode('utf-8', errors='replace')
    return rewrite_css(css, base_url).encode('utf-8'), 'text/css; charset=utf-8'


def _passthrough(body, content_type, base_url):
    return body, content_type


_HANDLERS = {
    ContentKind.HTML: _rewrite_html_body,
    ContentKind.CSS: _rewrite_css_body,
    ContentKind.TEXT: _passthrough,
    ContentKind.BINARY: _passthrough,
}


def rewrite_content(body, content_type, base_url):
    """
    Rewrite a relayed body according to its declared content type.

    Returns (body bytes, content type to serve). A document that cannot be
    rewritten is served unchanged.
    """
    kind = ContentKind.from_content_type(content_type)
    try:
        return _HANDLERS[kind](body, content_type, base_url)
    except Exception:
        logger.exception(f"Rewriting {kind.value} from {base_url} failed, serving it unchanged")
        return body, content_type
