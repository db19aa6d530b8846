"""Mock school directory for crawler tests.

The directory mimics the layout of the Virginia School Quality Profiles
site: one paginated list per division at ``/virginia-schools?division=N``
(later pages at ``/virginia-schools/page/N?division=N``) and one detail
page per school carrying an ``itemprop="address"`` field.

Tests steer the server through ``DirectoryState``: fail or block given
paths a number of times, remove pages, slow down list or detail pages,
change a division's content, and read back hit counts and the peak
number of concurrent detail requests.
"""

import asyncio
import hashlib
from dataclasses import dataclass, field

from aiohttp import web


@dataclass
class MockSchool:
    """A school in the mock directory."""

    slug: str
    name: str
    grade_span: str
    address: str | None


@dataclass
class MockDivision:
    """A division and its schools, listed ``per_page`` rows at a time."""

    code: int
    name: str
    schools: list[MockSchool]
    per_page: int = 3

    @property
    def total_pages(self) -> int:
        return max(1, -(-len(self.schools) // self.per_page))

    def page(self, number: int) -> list[MockSchool]:
        start = (number - 1) * self.per_page
        return self.schools[start : start + self.per_page]


DIVISIONS: dict[int, MockDivision] = {
    # Two pages: 3 rows, then 2 rows
    98: MockDivision(
        code=98,
        name="Falls Church City",
        schools=[
            MockSchool(
                "mount-daniel-elementary",
                "Mount Daniel Elementary",
                "PK-1",
                "2328 N Oak St, Falls Church, VA 22046",
            ),
            MockSchool(
                "oak-street-elementary",
                "Oak Street Elementary",
                "2-5",
                "317 N Oak St, Falls Church, VA 22046",
            ),
            MockSchool(
                "mary-ellen-henderson-middle",
                "Mary Ellen Henderson Middle",
                "6-8",
                "7130 Leesburg Pike, Falls Church, VA 22043",
            ),
            MockSchool(
                "meridian-high",
                "Meridian High",
                "9-12",
                "121 Mustang Aly, Falls Church, VA 22043",
            ),
            MockSchool(
                "jessie-thackrey-preschool",
                "Jessie Thackrey Preschool",
                "PK",
                None,
            ),
        ],
    ),
    # Single page, no pager
    7: MockDivision(
        code=7,
        name="Bath County",
        schools=[
            MockSchool(
                "millboro-elementary",
                "Millboro Elementary",
                "PK-7",
                "16 Millboro School Rd, Millboro, VA 24460",
            ),
            MockSchool(
                "bath-county-high",
                "Bath County High",
                "8-12",
                "464 Charger Ln, Hot Springs, VA 24445",
            ),
        ],
    ),
    # Many schools on one page, for concurrency checks
    43: MockDivision(
        code=43,
        name="Henrico County",
        schools=[
            MockSchool(
                f"henrico-school-{i}",
                f"Henrico School {i}",
                "K-5",
                f"{100 + i} Parham Rd, Henrico, VA 23229",
            )
            for i in range(12)
        ],
        per_page=20,
    ),
}


@dataclass
class DirectoryState:
    """Mutable behavior and counters of the mock directory."""

    hits: dict[str, int] = field(default_factory=dict)
    methods: list[tuple[str, str]] = field(default_factory=list)
    fail_counts: dict[str, int] = field(default_factory=dict)
    block_counts: dict[str, int] = field(default_factory=dict)
    gone: set[str] = field(default_factory=set)
    head_status: int | None = None
    versions: dict[int, int] = field(default_factory=dict)
    list_delay: float = 0.0
    detail_delay: float = 0.0
    in_flight: int = 0
    peak_in_flight: int = 0
    user_agents: list[str] = field(default_factory=list)

    def hit_count(self, path: str) -> int:
        return self.hits.get(path, 0)

    def detail_hits(self) -> int:
        return sum(
            count
            for path, count in self.hits.items()
            if path.startswith("/schools/")
        )

    def fail(self, path: str, times: int) -> None:
        """Answer ``path`` with HTTP 500 for the next ``times`` requests."""
        self.fail_counts[path] = times

    def block(self, path: str, times: int) -> None:
        """Answer ``path`` with HTTP 403 for the next ``times`` requests."""
        self.block_counts[path] = times

    def remove(self, path: str) -> None:
        """Answer ``path`` with HTTP 404 from now on."""
        self.gone.add(path)

    def change(self, division_code: int) -> None:
        """Bump a division's version so its validators change."""
        self.versions[division_code] = self.versions.get(division_code, 0) + 1


def list_path(division_code: int, page: int = 1) -> str:
    if page == 1:
        return "/virginia-schools"
    return f"/virginia-schools/page/{page}"


def generate_pager_html(division: MockDivision, current: int) -> str:
    """WordPress-style pager, omitted for single-page divisions."""
    if division.total_pages == 1:
        return ""
    links = []
    for number in range(1, division.total_pages + 1):
        if number == current:
            links.append(
                f'<span aria-current="page" class="page-numbers current">'
                f"{number}</span>"
            )
        else:
            href = f"{list_path(division.code, number)}?division={division.code}"
            links.append(f'<a class="page-numbers" href="{href}">{number}</a>')
    if current < division.total_pages:
        href = (
            f"{list_path(division.code, current + 1)}"
            f"?division={division.code}"
        )
        links.append(f'<a class="next page-numbers" href="{href}">Next</a>')
    return f'<div class="pagination">{"".join(links)}</div>'


def generate_list_html(division: MockDivision, page: int) -> str:
    """HTML for one list page of a division."""
    rows = []
    for school in division.page(page):
        rows.append(f"""
            <tr>
                <td><a href="/schools/{school.slug}">{school.name}</a></td>
                <td>{division.name}</td>
                <td>{school.grade_span}</td>
            </tr>""")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Virginia Schools - {division.name}</title>
</head>
<body>
    <!-- rendered for the mock directory -->
    <table class="results">
        <thead>
            <tr>
                <th>School</th>
                <th>Division</th>
                <th>Grades</th>
            </tr>
        </thead>
        <tbody>
            {"".join(rows)}
        </tbody>
    </table>
    {generate_pager_html(division, page)}
</body>
</html>"""


def generate_detail_html(school: MockSchool) -> str:
    address = (
        f'<span itemprop="address">\n    {school.address}\n  </span>'
        if school.address
        else ""
    )
    return f"""<!DOCTYPE html>
<html>
<body>
  <h1>{school.name}</h1>
  <div class="contact">
  {address}
  </div>
</body>
</html>"""


def find_school(slug: str) -> MockSchool | None:
    for division in DIVISIONS.values():
        for school in division.schools:
            if school.slug == slug:
                return school
    return None


STATE_KEY = web.AppKey("state", DirectoryState)


def _state(request: web.Request) -> DirectoryState:
    return request.app[STATE_KEY]


def _record(request: web.Request) -> web.Response | None:
    """Count the hit and apply any scripted failure for this path."""
    state = _state(request)
    path = request.path
    state.hits[path] = state.hits.get(path, 0) + 1
    state.methods.append((request.method, path))
    state.user_agents.append(request.headers.get("User-Agent", ""))

    if path in state.gone:
        return web.Response(status=404, text="Not Found")
    if state.fail_counts.get(path, 0) > 0:
        state.fail_counts[path] -= 1
        return web.Response(status=500, text="Internal Server Error")
    if state.block_counts.get(path, 0) > 0:
        state.block_counts[path] -= 1
        return web.Response(status=403, text="Access Denied")
    return None


async def handle_division_list(request: web.Request) -> web.Response:
    """Serve a division list page; HEAD answers with validators only."""
    scripted = _record(request)
    if scripted is not None:
        return scripted
    state = _state(request)
    if state.list_delay:
        await asyncio.sleep(state.list_delay)

    try:
        code = int(request.query.get("division", ""))
    except ValueError:
        return web.Response(status=400, text="division is required")
    page = int(request.match_info.get("page", "1"))
    division = DIVISIONS.get(code)
    if division is None:
        return web.Response(
            text="<html><body><p>No schools found.</p></body></html>",
            content_type="text/html",
        )

    if request.method == "HEAD" and state.head_status is not None:
        return web.Response(status=state.head_status)

    html = generate_list_html(division, page)
    version = state.versions.get(code, 0)
    etag = hashlib.sha256(f"{html}|{version}".encode()).hexdigest()[:16]
    return web.Response(
        text=html,
        content_type="text/html",
        headers={
            "ETag": f'"{etag}"',
            "Last-Modified": f"Mon, 0{version % 9 + 1} Sep 2025 10:00:00 GMT",
        },
    )


async def handle_school_detail(request: web.Request) -> web.Response:
    scripted = _record(request)
    if scripted is not None:
        return scripted
    state = _state(request)

    school = find_school(request.match_info["slug"])
    if school is None:
        return web.Response(status=404, text="Not Found")

    state.in_flight += 1
    state.peak_in_flight = max(state.peak_in_flight, state.in_flight)
    try:
        if state.detail_delay:
            await asyncio.sleep(state.detail_delay)
    finally:
        state.in_flight -= 1
    return web.Response(
        text=generate_detail_html(school), content_type="text/html"
    )


def create_app(state: DirectoryState | None = None) -> web.Application:
    """Create the aiohttp application with all routes.

    Returns:
        Configured aiohttp Application.
    """
    app = web.Application()
    app[STATE_KEY] = state or DirectoryState()
    app.router.add_get("/virginia-schools", handle_division_list)
    app.router.add_get(
        "/virginia-schools/page/{page:\\d+}", handle_division_list
    )
    app.router.add_get("/schools/{slug}", handle_school_detail)
    return app
