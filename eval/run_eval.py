"""Offline evaluation harness for the recommendation service.

Each JSONL case holds a conversation and the venues a good answer should include:
  {"qid": "q1", "messages": [{"role": "user", "content": "..."}], "user_lat": 32.08, "user_lng": 34.78,
   "expected": [{"id": "..."}, {"name": "..."}]}

Usage:
  python run_eval.py --base http://localhost:8010 --cases eval/cases_v1.jsonl --out eval/report_v1
"""

from __future__ import annotations

import argparse
import csv
import json
import math
import re
import statistics
import time
import unicodedata
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import requests


def load_jsonl(path: Path) -> list[dict[str, Any]]:
  with path.open('r', encoding='utf-8') as fh:
    return [json.loads(line) for line in fh if line.strip()]


def normalise(text: Any) -> str:
  if text is None:
    return ''
  value = unicodedata.normalize('NFKC', str(text)).lower()
  return re.sub(r'[\s\-_,\.·()\'"]+', '', value)


def venue_matches(venue: dict[str, Any], expected: dict[str, Any]) -> bool:
  if expected.get('id') and venue.get('id') == expected['id']:
    return True
  got = normalise(venue.get('name'))
  want = normalise(expected.get('name'))
  return bool(got and want and (got in want or want in got))


@dataclass
class EvalResult:
  qid: str
  hit: float = 0.0
  hits: int = 0
  returned: int = 0
  latency_ms: float = float('nan')
  match_percentages: list[int] = field(default_factory=list)
  hard_filter_count: int = 0
  pipeline_error: str | None = None
  error: str | None = None


def evaluate_case(base_url: str, case: dict[str, Any], timeout: float) -> EvalResult:
  payload = {
    'messages': case['messages'],
    'user_lat': case.get('user_lat'),
    'user_lng': case.get('user_lng'),
    'include_debug': True,
  }
  started = time.perf_counter()
  response = requests.post(f'{base_url}/recommend', json=payload, timeout=timeout)
  latency_ms = (time.perf_counter() - started) * 1000

  if not response.ok:
    return EvalResult(qid=case['qid'], latency_ms=latency_ms, error=f'HTTP {response.status_code}: {response.text[:200]}')
  try:
    data = response.json()
  except ValueError as exc:
    return EvalResult(qid=case['qid'], latency_ms=latency_ms, error=f'invalid json: {exc}')

  recs = data.get('recommendations') or []
  debug = data.get('debug') or {}
  expected = case.get('expected') or []
  hits = sum(1 for rec in recs if any(venue_matches(rec.get('venue') or {}, e) for e in expected))
  if expected:
    hit = 1.0 if hits else 0.0
  else:
    # cases with nothing expected pass only when the service returns nothing
    hit = 1.0 if not recs else 0.0

  return EvalResult(
    qid=case['qid'],
    hit=hit,
    hits=hits,
    returned=len(recs),
    latency_ms=latency_ms,
    match_percentages=[int(rec.get('match_percentage', 0)) for rec in recs],
    hard_filter_count=int(debug.get('hard_filter_count') or 0),
    pipeline_error=debug.get('error'),
  )


def avg(values: Iterable[float]) -> float:
  values = list(values)
  return sum(values) / len(values) if values else 0.0


def main() -> None:
  parser = argparse.ArgumentParser(description='Offline evaluation for the restaurant recommender')
  parser.add_argument('--base', default='http://localhost:8010', help='Service base URL')
  parser.add_argument('--cases', default='eval/cases_v1.jsonl', help='Conversation cases JSONL path')
  parser.add_argument('--concurrency', type=int, default=2, help='Number of worker threads')
  parser.add_argument('--out', default='eval/report_v1', help='Output directory for reports')
  parser.add_argument('--timeout', type=float, default=60.0, help='Request timeout in seconds')
  args = parser.parse_args()

  base_url = args.base.rstrip('/')
  cases_path = Path(args.cases)
  if not cases_path.exists():
    raise FileNotFoundError(f'cases file not found: {cases_path}')
  out_dir = Path(args.out)
  out_dir.mkdir(parents=True, exist_ok=True)

  cases = load_jsonl(cases_path)
  results: list[EvalResult] = []

  def task(case: dict[str, Any]) -> EvalResult:
    try:
      return evaluate_case(base_url, case, args.timeout)
    except requests.RequestException as exc:
      return EvalResult(qid=case['qid'], error=str(exc))

  with ThreadPoolExecutor(max_workers=max(1, args.concurrency)) as executor:
    futures = [executor.submit(task, case) for case in cases]
    for future in as_completed(futures):
      results.append(future.result())
  results.sort(key=lambda item: item.qid)

  metrics_path = out_dir / 'metrics.csv'
  with metrics_path.open('w', newline='', encoding='utf-8') as fh:
    writer = csv.writer(fh)
    writer.writerow(['qid', 'hit', 'hits', 'returned', 'latency_ms', 'match_pct_mean', 'hard_filter_count', 'pipeline_error', 'error'])
    for item in results:
      writer.writerow([
        item.qid,
        f'{item.hit:.0f}',
        item.hits,
        item.returned,
        f'{item.latency_ms:.1f}' if math.isfinite(item.latency_ms) else 'nan',
        f'{avg(item.match_percentages):.1f}',
        item.hard_filter_count,
        item.pipeline_error or '',
        item.error or '',
      ])

  ok = [item for item in results if not item.error]
  latencies = [item.latency_ms for item in ok if math.isfinite(item.latency_ms)]
  percentages = [p for item in ok for p in item.match_percentages]
  degraded = [item for item in ok if item.pipeline_error]

  summary_path = out_dir / 'report.md'
  with summary_path.open('w', encoding='utf-8') as fh:
    fh.write('# Evaluation Summary\n\n')
    fh.write(f'- Cases evaluated: {len(results)}\n')
    fh.write(f'- Request errors: {len(results) - len(ok)}\n')
    fh.write(f'- Degraded pipeline runs: {len(degraded)}\n')
    fh.write(f'- Hit rate: {avg(item.hit for item in ok):.3f}\n')
    fh.write(f'- Full answers (3 picks): {avg(1.0 if item.returned == 3 else 0.0 for item in ok):.3f}\n')
    if latencies:
      fh.write(f'- Latency mean / median / max (ms): {avg(latencies):.1f} / {statistics.median(latencies):.1f} / {max(latencies):.1f}\n')
    if percentages:
      fh.write(f'- Match % mean / min / max: {avg(percentages):.1f} / {min(percentages)} / {max(percentages)}\n')
    failures = [item for item in results if item.error or item.pipeline_error]
    if failures:
      fh.write('\n## Failures\n')
      for item in failures:
        fh.write(f'- {item.qid}: {item.error or item.pipeline_error}\n')

  print(f'Evaluation finished. Metrics written to {metrics_path}')


if __name__ == '__main__':
  main()
