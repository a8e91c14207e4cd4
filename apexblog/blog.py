#!/usr/bin/env python3
"""
Chart embeds for a Markdown blog.

`{% apexcharts %} … {% endapexcharts %}` blocks become a <div> with a fresh
id plus a module script that hands the block text to ApexCharts.
"""

import os
import random
import re
import secrets
import string
from collections import defaultdict, deque
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
import markdown
from flask import (
    Flask,
    Response,
    abort,
    flash,
    render_template_string,
    request,
)
from jinja2 import nodes
from jinja2.ext import Extension as JinjaExtension
from markdown.extensions import Extension
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

APEXCHARTS_SRC_DEFAULT = "https://cdn.jsdelivr.net/npm/apexcharts"
ID_ALPHABET = string.digits + string.ascii_lowercase  # 36 symbols
ID_LENGTH_DEFAULT = 8
ID_PREFIX_DEFAULT = "a"
ID_PREFIX_RE = re.compile(r"[A-Za-z][A-Za-z0-9_-]*")
SITE_NAME_DEFAULT = "apexblog"

_CODE_FENCE_RE = re.compile(r"^\s*(```|~~~)")
# opener at the start of a line, closer at the end; config may share either line
_CHART_OPEN_RE = re.compile(r"^\s*\{%-?\s*apexcharts\s*-?%\}(.*)$", re.S)
_CHART_CLOSE_RE = re.compile(r"^(.*?)\{%-?\s*endapexcharts\s*-?%\}\s*$", re.S)
_CHART_TAG_RE = re.compile(r"\{%-?\s*(?:end)?apexcharts\b")
_SCRIPT_CLOSE_RE = re.compile(r"</(script)", re.I)
RAW_MIMES = {"text/plain", "application/json", "application/javascript", "text/javascript"}

_ID_RNG = secrets.SystemRandom()

try:
    __version__ = version("apexblog")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_setting(key: str, default: str = "") -> str:
    """Process env wins over `.env`, which wins over *default*."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


def _env_flag(value: str) -> bool:
    return value.strip().lower() not in {"", "0", "false", "no", "off"}


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    SITE_NAME=env_setting("SITE_NAME", SITE_NAME_DEFAULT),
    APEXCHARTS_SRC=env_setting("APEXCHARTS_SRC", APEXCHARTS_SRC_DEFAULT),
    APEXCHARTS_ID_PREFIX=env_setting("APEXCHARTS_ID_PREFIX", ID_PREFIX_DEFAULT),
    APEXCHARTS_ID_LENGTH=int(
        env_setting("APEXCHARTS_ID_LENGTH", str(ID_LENGTH_DEFAULT))
    ),
    APEXCHARTS_ESCAPE_SCRIPT=_env_flag(env_setting("APEXCHARTS_ESCAPE_SCRIPT", "1")),
    APEXCHARTS_RENDER_LIMIT=int(env_setting("APEXCHARTS_RENDER_LIMIT", "60")),
    APEXCHARTS_RENDER_WINDOW=int(env_setting("APEXCHARTS_RENDER_WINDOW", "60")),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


###############################################################################
# Chart embeds
###############################################################################
TEMPL_CHART = """\
<div id="{id}"></div>
<script type="module">
    const chartDiv = document.getElementById("{id}");

    const chart = new ApexCharts(chartDiv, {config});
    chart.render();
</script>
"""


def new_anchor_id(rng=None, *, length: int | None = None, prefix: str | None = None) -> str:
    """
    Fresh DOM id for one chart: *prefix* + *length* chars of [0-9a-z].

    Nothing remembers the ids already handed out; with the defaults
    (36**8 tokens) a page of a few dozen charts practically never
    collides.  *rng* is anything with a ``choice`` method
    (``random.Random(seed)`` for reproducible output).
    """
    rng = _ID_RNG if rng is None else rng
    length = app.config["APEXCHARTS_ID_LENGTH"] if length is None else length
    prefix = app.config["APEXCHARTS_ID_PREFIX"] if prefix is None else prefix
    if length < 1:
        raise ValueError(f"anchor id length must be >= 1, got {length}")
    if not ID_PREFIX_RE.fullmatch(prefix or ""):
        raise ValueError(f"anchor id prefix must start with a letter, got {prefix!r}")
    return prefix + "".join(rng.choice(ID_ALPHABET) for _ in range(length))


def neutralise_script_breaks(text: str) -> str:
    """
    Rewrite `</script` → `<\\/script` and `<!--` → `<\\!--`.

    Inside JS string literals both spellings mean the same thing, and
    those are the only places either may appear in a chart config.
    """
    return _SCRIPT_CLOSE_RE.sub(r"<\\/\1", text).replace("<!--", "<\\!--")


def render_apexcharts(content: str | None, *, rng=None) -> str:
    """
    Turn the raw text of one chart block into a <div> + <script> pair.

    *content* is not parsed: whatever the author wrote ends up as the
    second argument of ``new ApexCharts(…)`` and the browser deals with it.
    """
    anchor = new_anchor_id(rng)
    text = content or ""
    if app.config["APEXCHARTS_ESCAPE_SCRIPT"]:
        safe = neutralise_script_breaks(text)
        if safe != text:
            app.logger.warning("Neutralised script-breaking markup in chart %s", anchor)
        text = safe
    app.logger.debug("Emitting chart %s", anchor)
    return TEMPL_CHART.format(id=anchor, config=text)


def needs_apexcharts(flag, chart_count: int = 0) -> bool:
    """Load the library when the page asks for it or actually has a chart."""
    return bool(flag) or chart_count > 0


###############################################################################
# Markdown
###############################################################################
MD_EXTENSION_CONFIGS = {
    "pymdownx.highlight": {
        "guess_lang": True,
        "noclasses": True,
        "pygments_style": "nord",
    },
}
BASE_MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.highlight",
    "pymdownx.saneheaders",
]


class ApexChartsPreprocessor(markdown.preprocessors.Preprocessor):
    """
    Pull `{% apexcharts %}` blocks out of the raw source.

    Runs ahead of normalize_whitespace, so tabs and control characters in
    the config reach the chart untouched.  Each block leaves a marker line
    behind that ApexChartsStashPreprocessor trades for the chart HTML.
    """

    def __init__(self, md_inst, rng=None):
        super().__init__(md_inst)
        self.rng = rng

    def _emit(self, content: str) -> list[str]:
        charts = self.md.apexcharts_html
        charts.append(render_apexcharts(content, rng=self.rng))
        self.md.apexcharts_count = len(charts)
        # blank lines keep the marker in a paragraph of its own
        return ["", f"{self.md.apexcharts_marker}{len(charts) - 1}", ""]

    def run(self, lines: list[str]) -> list[str]:
        out, in_code, fence = [], False, ""
        in_chart, start, buf = False, 0, []
        for i, ln in enumerate(lines):
            if in_chart:
                m_c = _CHART_CLOSE_RE.match(ln)
                if m_c:
                    if m_c.group(1).strip():
                        buf.append(m_c.group(1))
                    out.extend(self._emit("\n".join(buf)))
                    in_chart, buf = False, []
                else:
                    buf.append(ln)
                continue

            m_f = _CODE_FENCE_RE.match(ln)
            if m_f:
                tok = m_f.group(1)
                if not in_code:
                    in_code, fence = True, tok
                elif tok == fence:
                    in_code, fence = False, ""
                out.append(ln)
                continue

            if in_code:
                out.append(ln)
                continue

            m_o = _CHART_OPEN_RE.match(ln)
            if m_o:
                rest = m_o.group(1)
                m_c = _CHART_CLOSE_RE.match(rest)
                if m_c:
                    out.extend(self._emit(m_c.group(1)))
                else:
                    in_chart, start = True, i
                    buf = [rest] if rest.strip() else []
                continue

            if _CHART_TAG_RE.search(ln):
                app.logger.warning(
                    "apexcharts tag not at a line edge on line %d, left as text", i + 1
                )
            out.append(ln)

        if in_chart:
            app.logger.warning(
                "Unclosed {%% apexcharts %%} block on line %d, left as text", start + 1
            )
            out.extend(lines[start:])
        return out


class ApexChartsStashPreprocessor(markdown.preprocessors.Preprocessor):
    """Trade marker lines for stashed chart HTML."""

    def run(self, lines: list[str]) -> list[str]:
        marker, charts = self.md.apexcharts_marker, self.md.apexcharts_html
        out = []
        for ln in lines:
            idx = ln.strip().removeprefix(marker)
            if idx != ln.strip() and idx.isdigit():
                out.append(self.md.htmlStash.store(charts[int(idx)]))
            else:
                out.append(ln)
        return out


class ApexChartsExtension(Extension):
    def __init__(self, rng=None, **kwargs):
        self.rng = rng
        super().__init__(**kwargs)

    def extendMarkdown(self, md_inst):
        self.md = md_inst
        md_inst.registerExtension(self)
        self.reset()
        # 35 runs ahead of normalize_whitespace (30); 27 lands before html_block (20)
        md_inst.preprocessors.register(
            ApexChartsPreprocessor(md_inst, rng=self.rng), "apexcharts", 35
        )
        md_inst.preprocessors.register(
            ApexChartsStashPreprocessor(md_inst), "apexcharts_stash", 27
        )

    def reset(self):
        self.md.apexcharts_html = []
        self.md.apexcharts_count = 0
        self.md.apexcharts_marker = f"apexcharts-{secrets.token_hex(6)}-"


def _markdown_renderer(rng=None):
    return markdown.Markdown(
        extensions=[*BASE_MD_EXTENSIONS, ApexChartsExtension(rng=rng)],
        extension_configs=MD_EXTENSION_CONFIGS,
    )


def render_markdown_html(text: str | None, *, rng=None) -> tuple[str, int]:
    """
    Markdown → HTML; also returns how many charts were emitted.

    The html stash and the chart list live on the Markdown instance and
    previews render on several threads, so every call gets its own renderer.
    """
    rnd = _markdown_renderer(rng=rng)
    html = rnd.convert(text or "")
    return html, rnd.apexcharts_count


###############################################################################
# Jinja
###############################################################################
class ApexChartsTag(JinjaExtension):
    """
    `{% apexcharts %}…{% endapexcharts %}` inside Jinja templates.

    With autoescaping on, ``{{ var }}`` in the body is HTML-escaped before
    it reaches the script (``&`` → ``&amp;``, ``"`` → ``&#34;``).  Feed
    data in through ``{{ var|tojson }}``, which is JSON-safe and not
    escaped again.
    """

    tags = {"apexcharts"}

    def parse(self, parser):
        lineno = next(parser.stream).lineno
        body = parser.parse_statements(("name:endapexcharts",), drop_needle=True)
        return nodes.CallBlock(
            self.call_method("_render_block"), [], [], body
        ).set_lineno(lineno)

    def _render_block(self, caller):
        return Markup(render_apexcharts(str(caller())))


app.jinja_env.add_extension(ApexChartsTag)
app.jinja_env.globals["version"] = __version__


###############################################################################
# Request helpers
###############################################################################
def rate_limit(limit_key: str, window_key: str):
    """
    Per-client throttle; the budget is read from app.config on every
    request so it can be tuned without re-registering the view.
    """
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            limit = app.config[limit_key]
            window = app.config[window_key]
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= limit:
                retry_after = max(1, int(window - (now - dq[0])))
                app.logger.warning("Throttled %s on %s (%d/%ds)", ip, request.path, limit, window)
                return Response(
                    "Too many chart renders – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Templates + Views
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or config.SITE_NAME }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1, shrink-to-fit=no">
<meta charset="utf-8">
{% if load_apexcharts %}
<script src="{{ config.APEXCHARTS_SRC }}"></script>
{% endif %}
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:#c9c9c9;background-color:#222222;padding:13px}h1,h2,h3{line-height:1.1;margin-top:3rem;margin-bottom:1.5rem}a{color:#ffffff}pre{background-color:#4a4a4a;padding:1em;overflow-x:auto}code{font-size:0.9em}textarea{width:100%;color:#c9c9c9;background-color:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;padding:6px 10px;box-sizing:border-box}.flash{color:#f9c0c0}.preview{border-top:1px solid #444;margin-top:2rem}
</style>
<body>
<main>
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:3rem;font-size:.75em;color:#888;">
  {{ config.SITE_NAME }} · v{{ version }}
</footer>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
<h1>Preview</h1>
{% with msgs = get_flashed_messages() %}
  {% for m in msgs %}<p class="flash">{{ m }}</p>{% endfor %}
{% endwith %}
<form method="post">
  <textarea name="body" rows="12" placeholder="Markdown with {&#37; apexcharts &#37;} blocks">{{ body }}</textarea>
  <label><input type="checkbox" name="apexcharts" value="1" {% if flag %}checked{% endif %}>
    always load ApexCharts</label>
  <button>Render</button>
</form>
{% if preview %}
<section class="preview">
{{ preview }}
</section>
{% endif %}
""")

TEMPL_PAGE = wrap("""
<article>
{{ content }}
</article>
""")

TEMPL_404 = wrap("""
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="/">Back to the preview</a>.</p>
""")

TEMPL_500 = wrap("""
  <h2>Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
""")


@app.route("/", methods=["GET", "POST"])
def index():
    body, flag, html, count = "", False, "", 0
    if request.method == "POST":
        body = request.form.get("body", "")
        flag = bool(request.form.get("apexcharts"))
        if not body.strip():
            flash("Text is required.")
        else:
            html, count = render_markdown_html(body)

    return render_template_string(
        TEMPL_INDEX,
        body=body,
        flag=flag,
        preview=Markup(html),
        load_apexcharts=needs_apexcharts(flag, count),
    )


@app.route("/render", methods=["POST"])
@rate_limit("APEXCHARTS_RENDER_LIMIT", "APEXCHARTS_RENDER_WINDOW")
def render_chart():
    """Raw chart config in, HTML fragment out."""
    if request.mimetype in RAW_MIMES:
        content = request.get_data(as_text=True)
    else:
        content = request.form.get("content")
        if content is None:
            abort(400)
    return Response(render_apexcharts(content), mimetype="text/html")


@app.route("/robots.txt")
def robots():
    return Response("User-agent: *\nDisallow: /\n", mimetype="text/plain")


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page.  Flask has already logged the traceback through
    app.logger by the time this runs.
    """
    return render_template_string(TEMPL_500, title="Server error"), 500


###############################################################################
# CLI
###############################################################################
def _seeded(seed: int | None):
    return None if seed is None else random.Random(seed)


@app.cli.command("chart")
@click.argument("source", type=click.File("r"), default="-")
@click.option("-o", "--output", type=click.File("w"), default="-")
@click.option("--seed", type=int, default=None, help="Seed chart ids (reproducible output).")
def cli_chart(source, output, seed):
    """Render one chart config (SOURCE, default stdin) to an HTML fragment."""
    output.write(render_apexcharts(source.read(), rng=_seeded(seed)))


@app.cli.command("render")
@click.argument("source", type=click.File("r"))
@click.option("-o", "--output", type=click.File("w"), default="-")
@click.option("--apexcharts", "flag", is_flag=True, help="Load ApexCharts even without charts.")
@click.option("--seed", type=int, default=None, help="Seed chart ids (reproducible output).")
def cli_render(source, output, flag, seed):
    """Render a Markdown file into a full HTML page."""
    html, count = render_markdown_html(source.read(), rng=_seeded(seed))
    page = render_template_string(
        TEMPL_PAGE,
        title=Path(source.name).stem if source.name != "<stdin>" else None,
        content=Markup(html),
        load_apexcharts=needs_apexcharts(flag, count),
    )
    output.write(page)
    if count:
        click.secho(f"{count} chart(s) rendered.", fg="green", err=True)
