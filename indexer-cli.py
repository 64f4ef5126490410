#!/usr/bin/env python3
import click
import requests
import json
import os
from tabulate import tabulate

CONFIG_FILE = os.path.expanduser("~/.escrow-indexer/config.json")
DEFAULT_URL = 'http://localhost:3456'

def load_config():
    if not os.path.exists(CONFIG_FILE):
        return {}
    with open(CONFIG_FILE, 'r') as f:
        return json.load(f)

def save_config(config):
    os.makedirs(os.path.dirname(CONFIG_FILE), exist_ok=True)
    with open(CONFIG_FILE, 'w') as f:
        json.dump(config, f, indent=4)

def _get(path, **params):
    url = load_config().get('indexer_url', DEFAULT_URL)
    resp = requests.get(f"{url}{path}", params=params, timeout=30)
    resp.raise_for_status()
    return resp.json()

def _short(value, n=10):
    if not value:
        return '-'
    return value if len(value) <= n else value[:n] + '…'

def _job_rows(jobs):
    return [[_short(j['job_id'], 12), _short(j['title'], 30), j['reward'], j['status'],
             _short(j['poster_id']), _short(j['claimer_id']), j['created_block']] for j in jobs]

JOB_HEADERS = ["Job", "Title", "Reward", "Status", "Poster", "Claimer", "Block"]

@click.group()
def cli():
    """Escrow Indexer CLI - query the projection and trigger syncs"""
    pass

@cli.command()
@click.option('--url', default=DEFAULT_URL, help='Indexer API URL')
@click.option('--api-key', default='', help='API key for POST /sync')
def init(url, api_key):
    """Save the indexer URL (and optional API key)."""
    config = load_config()
    config['indexer_url'] = url
    if api_key:
        config['api_key'] = api_key
    save_config(config)
    click.echo(f"Configuration saved to {CONFIG_FILE}")

@cli.command()
def stats():
    """Show aggregate statistics and sync progress."""
    try:
        data = _get('/stats')
    except requests.RequestException as e:
        click.echo(f"Error connecting to indexer: {e}")
        return
    click.echo(f"Contract: {data['contract']} on {data['chain']}")
    click.echo(f"Last synced block: {click.style(str(data['last_synced_block']), fg='cyan')}")
    click.echo(f"Jobs: {data['total_jobs']} | Agents: {data['total_agents']} | "
               f"Events: {data['total_events']} | Escrowed: {data['total_escrowed']}")
    rows = [[r['status'], r['count']] for r in data['job_status_breakdown']]
    if rows:
        click.echo(tabulate(rows, headers=["Status", "Jobs"], tablefmt="simple"))

@cli.command()
@click.option('--status', default=None, help='Filter by job status')
@click.option('--limit', default=50, help='Max rows')
@click.option('--offset', default=0, help='Pagination offset')
def jobs(status, limit, offset):
    """List jobs, newest first."""
    params = {'limit': limit, 'offset': offset}
    if status:
        params['status'] = status
    try:
        data = _get('/jobs', **params)
    except requests.RequestException as e:
        click.echo(f"Error connecting to indexer: {e}")
        return
    click.echo(tabulate(_job_rows(data['jobs']), headers=JOB_HEADERS, tablefmt="simple"))
    click.echo(f"{len(data['jobs'])} of {data['total']}")

@cli.command()
@click.argument('job_id')
def job(job_id):
    """Show one job and its event history."""
    try:
        data = _get(f'/jobs/{job_id}')
    except requests.HTTPError as e:
        click.echo(click.style("Failed!", fg='red') + f" {e.response.json().get('error')}")
        return
    except requests.RequestException as e:
        click.echo(f"Error connecting to indexer: {e}")
        return
    for key, value in data['job'].items():
        click.echo(f"{key:>16}: {value}")
    rows = [[e['block_number'], e['log_index'], e['event_type'], _short(e['tx_hash'], 14)]
            for e in data['history']]
    click.echo(tabulate(rows, headers=["Block", "Log", "Event", "Tx"], tablefmt="simple"))

@cli.command()
@click.argument('address')
def wallet(address):
    """Jobs posted and claimed by a wallet address."""
    try:
        data = _get(f'/agents/{address}/jobs')
    except requests.RequestException as e:
        click.echo(f"Error: {e}")
        return
    agent = data.get('agent')
    click.echo(f"Agent: {agent['agent_id'] + ' (' + (agent['name'] or '') + ')' if agent else 'not registered'}")
    click.echo("Posted:")
    click.echo(tabulate(_job_rows(data['posted']), headers=JOB_HEADERS, tablefmt="simple"))
    click.echo("Claimed:")
    click.echo(tabulate(_job_rows(data['claimed']), headers=JOB_HEADERS, tablefmt="simple"))

@cli.command()
@click.option('--limit', default=50, help='Max rows')
def agents(limit):
    """List registered agents."""
    try:
        data = _get('/agents', limit=limit)
    except requests.RequestException as e:
        click.echo(f"Error connecting to indexer: {e}")
        return
    rows = [[a['agent_id'], a['name'], a['wallet'], a['registered_block']] for a in data['agents']]
    click.echo(tabulate(rows, headers=["Agent", "Name", "Wallet", "Block"], tablefmt="simple"))

@cli.command()
@click.option('--type', 'event_type', default=None, help='Filter by event type')
@click.option('--limit', default=50, help='Max rows')
def events(event_type, limit):
    """List recent events."""
    params = {'limit': limit}
    if event_type:
        params['type'] = event_type
    try:
        data = _get('/events', **params)
    except requests.RequestException as e:
        click.echo(f"Error connecting to indexer: {e}")
        return
    rows = [[e['block_number'], e['log_index'], e['event_type'], _short(e['job_id'], 12),
             _short(e['tx_hash'], 14)] for e in data['events']]
    click.echo(tabulate(rows, headers=["Block", "Log", "Event", "Job", "Tx"], tablefmt="simple"))

@cli.command()
@click.option('--limit', default=200, help='Max rows')
def gaps(limit):
    """List job events whose job was never posted."""
    try:
        data = _get('/events/gaps', limit=limit)
    except requests.RequestException as e:
        click.echo(f"Error connecting to indexer: {e}")
        return
    if not data['events']:
        click.echo(click.style("No consistency gaps.", fg='green'))
        return
    rows = [[e['block_number'], e['log_index'], e['event_type'], e['job_id'],
             _short(e['tx_hash'], 14)] for e in data['events']]
    click.echo(tabulate(rows, headers=["Block", "Log", "Event", "Job", "Tx"], tablefmt="simple"))
    click.echo(f"{data['count']} orphaned event(s)")

@cli.command()
def sync():
    """Trigger a sync run now (requires API key)."""
    config = load_config()
    url = config.get('indexer_url', DEFAULT_URL)
    api_key = config.get('api_key') or os.environ.get('API_KEY', '')

    if not api_key:
        click.echo("No API key. Run 'indexer-cli init --api-key ...' or set API_KEY.")
        return

    try:
        click.echo("Syncing...")
        resp = requests.post(f"{url}/sync", headers={'X-API-Key': api_key}, timeout=600)
        if resp.status_code == 200:
            res = resp.json()
            click.echo(click.style("Success!", fg='green') +
                       f" Last block {res['last_block']}, {res['result']['events_applied']} events applied.")
        else:
            click.echo(click.style("Failed!", fg='red') + f" {resp.json().get('error')}")
    except requests.RequestException as e:
        click.echo(f"Error: {e}")

if __name__ == '__main__':
    cli()
