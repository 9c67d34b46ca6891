import json, os, time

DEFAULT_LOG_PATH = 'data/logs/pipeline.jsonl'


def log_path():
    return os.getenv('DBZ_EVENT_LOG') or DEFAULT_LOG_PATH


def event(step, card_id=None, status='ok', **kw):
    path = log_path()
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    rec = {'ts': time.time(), 'step': step, 'card_id': card_id, 'status': status}
    rec.update(kw)
    with open(path, 'a', encoding='utf-8') as f:
        f.write(json.dumps(rec, default=str) + '\n')
