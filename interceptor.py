"""
Client-side interception script injected into every relayed HTML document.

The script keeps script-driven traffic inside the relay and turns clicks and
submits on marked elements into messages for the hosting page:

    {type: "proxy-navigate", url}
    {type: "proxy-form-submit", action, method, data}
"""

import json

from settings import RELAY_PATH

NAVIGATE_MESSAGE = 'proxy-navigate'
FORM_SUBMIT_MESSAGE = 'proxy-form-submit'

LINK_MARKER = 'data-proxy-link'
FORM_MARKER = 'data-proxy-form'
SCRIPT_MARKER = 'data-proxy-interceptor'


def _js_string(value):
    # A literal "</" would close the surrounding <script> element early
    return json.dumps(value).replace('</', '<\\/')


def generate_interceptor(base_url, relay_path=RELAY_PATH):
    """Return the interception script for a document whose base URL is base_url."""
    relay_prefix = relay_path + '?url='
    return f'''
(function() {{
  if (window.__proxyInterceptorInstalled) {{ return; }}
  window.__proxyInterceptorInstalled = true;

  var BASE_URL = {_js_string(base_url)};
  var RELAY_PREFIX = {_js_string(relay_prefix)};

  function toRelayUrl(url) {{
    if (!url || url.indexOf('data:') === 0 || url.indexOf('blob:') === 0) {{ return url; }}
    if (url.indexOf(RELAY_PREFIX) === 0) {{ return url; }}
    try {{
      return RELAY_PREFIX + encodeURIComponent(new URL(url, BASE_URL).href);
    }} catch (e) {{
      return url;
    }}
  }}

  var originalOpen = XMLHttpRequest.prototype.open;
  XMLHttpRequest.prototype.open = function(method, url) {{
    var args = Array.prototype.slice.call(arguments);
    args[1] = toRelayUrl(String(url));
    return originalOpen.apply(this, args);
  }};

  var originalFetch = window.fetch;
  if (originalFetch) {{
    window.fetch = function(input, init) {{
      if (typeof input === 'string') {{
        input = toRelayUrl(input);
      }} else if (typeof URL !== 'undefined' && input instanceof URL) {{
        input = toRelayUrl(input.href);
      }}
      return originalFetch.call(this, input, init);
    }};
  }}

  document.addEventListener('click', function(event) {{
    var link = event.target && event.target.closest ? event.target.closest('a[href]') : null;
    if (!link || !link.hasAttribute({_js_string(LINK_MARKER)})) {{ return; }}
    var href = link.getAttribute('href');
    // Fragments, javascript: and mailto: links were never rewritten; let them act natively
    if (!href || href.charAt(0) === '#' || href.indexOf(RELAY_PREFIX) !== 0) {{ return; }}
    event.preventDefault();
    window.parent.postMessage({{type: {_js_string(NAVIGATE_MESSAGE)}, url: href}}, '*');
  }}, true);

  document.addEventListener('submit', function(event) {{
    var form = event.target;
    if (!form || !form.hasAttribute || !form.hasAttribute({_js_string(FORM_MARKER)})) {{ return; }}
    event.preventDefault();
    var data = {{}};
    new FormData(form).forEach(function(value, name) {{ data[name] = value; }});
    window.parent.postMessage({{
      type: {_js_string(FORM_SUBMIT_MESSAGE)},
      action: form.getAttribute('action'),
      method: (form.getAttribute('method') || 'GET').toUpperCase(),
      data: data
    }}, '*');
  }}, true);
}})();
'''
