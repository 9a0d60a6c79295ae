from pathlib import Path
from typing import Dict, Any, Callable
import html
import json

DETAILED_FORMAT = "html"
FORMAT_LABELS = {"html": "HTML (detailed)", "json": "JSON (structured)", "md": "Markdown (plain)"}


def report_data(session) -> Dict[str, Any]:
    return {
        "session": {
            "id": session.session_id,
            "started_at": session.started_at.isoformat() if session.started_at else None,
            "finished_at": session.finished_at.isoformat() if session.finished_at else None,
            "duration_ms": session.duration_ms,
            "rules": [r.full_name for r in session.rules],
        },
        "artifacts": [{
            "path": str(e.parsed.path),
            "size": e.parsed.size,
            "sha256": e.parsed.sha256,
            "sha1": e.parsed.sha1,
            "md5": e.parsed.md5,
            "mime": e.parsed.mime,
            "pe": e.parsed.pe,
        } for e in session.artifacts if e.parsed is not None],
        "defects": [{
            "rule": d.rule,
            "artifact": d.artifact,
            "description": d.description,
            "tags": d.tags,
            "meta": d.meta,
            "strings": [{"id": s.identifier, "offset": s.offset, "preview": s.data_preview} for s in d.strings]
        } for d in session.defects]
    }


def write_json(session, destination):
    Path(destination).write_text(json.dumps(report_data(session), indent=2, default=str), encoding="utf-8")


def write_markdown(session, destination):
    Path(destination).write_text(_to_markdown(report_data(session)), encoding="utf-8")


def write_html(session, destination):
    Path(destination).write_text(_to_html(report_data(session)), encoding="utf-8")


WRITERS: Dict[str, Callable[[Any, Any], None]] = {
    "html": write_html,
    "json": write_json,
    "md": write_markdown,
}


def _to_markdown(data: Dict[str, Any]) -> str:
    s = data["session"]
    md = []
    md.append("# YaraWizard Report")
    md.append("")
    md.append(f"**Artifacts:** {len(data['artifacts'])}  ")
    md.append(f"**Rules:** {len(s['rules'])}  ")
    md.append(f"**Defects:** {len(data['defects'])}  ")
    md.append(f"**Duration:** {s['duration_ms']} ms  ")
    md.append("")
    md.append("## Artifacts")
    for a in data["artifacts"]:
        md.append(f"- `{a['path']}` ({a['size']} bytes, SHA-256 `{a['sha256']}`)")
    md.append("")
    md.append("## Defects")
    if not data["defects"]:
        md.append("_No defects_")
    for d in data["defects"]:
        md.append(f"### {d['rule']}  \n*Artifact:* `{d['artifact']}`  \n*Tags:* {', '.join(d['tags']) or '-'}")
        if d["description"]:
            md.append(d["description"])
        if d["strings"]:
            md.append("**Strings:**")
            for st in d["strings"][:50]:
                md.append(f"- `{st['id']}` @ 0x{st['offset']:X}: {st['preview']}")
        md.append("")
    return "\n".join(md)


def _to_html(data: Dict[str, Any]) -> str:
    e = html.escape
    s = data["session"]
    out = [
        "<!DOCTYPE html>",
        "<html><head><meta charset=\"utf-8\"><title>YaraWizard Report</title>",
        "<style>body{font-family:sans-serif}table{border-collapse:collapse}"
        "td,th{border:1px solid #999;padding:2px 6px}code{color:#a00}</style>",
        "</head><body>",
        "<h1>YaraWizard Report</h1>",
        f"<p>{len(data['artifacts'])} artifact(s), {len(s['rules'])} rule(s), "
        f"{len(data['defects'])} defect(s) in {s['duration_ms']} ms</p>",
        "<h2>Artifacts</h2><table><tr><th>Path</th><th>Size</th><th>SHA-256</th><th>PE</th></tr>",
    ]
    for a in data["artifacts"]:
        pe = a["pe"] or {}
        pe_text = f"sections={pe.get('sections')} machine={pe.get('machine')}" if pe else "-"
        out.append(f"<tr><td>{e(a['path'])}</td><td>{a['size']}</td>"
                   f"<td><code>{e(a['sha256'])}</code></td><td>{e(pe_text)}</td></tr>")
    out.append("</table><h2>Defects</h2>")
    if not data["defects"]:
        out.append("<p><em>No defects</em></p>")
    for d in data["defects"]:
        out.append(f"<h3>{e(d['rule'])}</h3>")
        out.append(f"<p>Artifact: <code>{e(d['artifact'])}</code><br>Tags: {e(', '.join(d['tags']) or '-')}</p>")
        if d["description"]:
            out.append(f"<p>{e(d['description'])}</p>")
        if d["strings"]:
            out.append("<ul>")
            for st in d["strings"][:50]:
                out.append(f"<li><code>{e(st['id'])}</code> @ 0x{st['offset']:X}: {e(st['preview'])}</li>")
            out.append("</ul>")
    out.append("</body></html>")
    return "\n".join(out)
