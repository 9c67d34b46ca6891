import json, os


def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def atomic_write_text(dst: str, text: str):
    ensure_dir(os.path.dirname(dst) or ".")
    tmp = dst + ".tmp"
    if os.path.exists(tmp):
        os.remove(tmp)
    with open(tmp, 'w', encoding='utf-8') as f:
        f.write(text)
    os.replace(tmp, dst)


def write_json(dst, value):
    """Whole-document JSON write: two-space indent and a trailing newline."""
    atomic_write_text(str(dst), json.dumps(value, indent=2, ensure_ascii=False) + "\n")
