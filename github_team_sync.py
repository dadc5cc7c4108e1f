"""
GitHub Team Sync
================

Creates one GitHub team per registered team, invites its members and grants
the team push access to its topic repository.

Per-operation outcomes:
- Team creation: an existing team with the same name is resolved by name
- Member invitation: failures are logged and never abort the team
- Repository access: failures are fatal for that team only

Teams are processed one at a time; a failed team does not stop the others.
The job takes no lock, so two syncs must not run at the same time.

Usage:
    GITHUB_TOKEN=... python github_team_sync.py --workbook registrations.xlsx
"""

import argparse
import os
import sys
import traceback
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional

import requests

from registration_store import ExcelRegistrationStore, RegistrationStore, StoreError


GITHUB_API_URL = 'https://api.github.com'
DEFAULT_ORG = 'M2-UDS-2025-2026-IA'
DEFAULT_WORKBOOK = 'registrations.xlsx'


class GitHubConfigError(Exception):
    """Raised when the token or organization is not configured."""


# =============================================================================
# Operation Results
# =============================================================================

class OperationResult:
    """
    Outcome of a single GitHub call.

    status is SUCCESS, CONFLICT (recoverable, e.g. team already exists)
    or FATAL.
    """

    SUCCESS = 'success'
    CONFLICT = 'conflict'
    FATAL = 'fatal'

    def __init__(self, status: str, value=None, message: str = '', status_code: Optional[int] = None):
        self.status = status
        self.value = value
        self.message = message
        self.status_code = status_code

    @property
    def ok(self) -> bool:
        return self.status == self.SUCCESS

    @classmethod
    def success(cls, value=None, status_code=None):
        return cls(cls.SUCCESS, value=value, status_code=status_code)

    @classmethod
    def conflict(cls, message: str, status_code=None):
        return cls(cls.CONFLICT, message=message, status_code=status_code)

    @classmethod
    def fatal(cls, message: str, status_code=None):
        return cls(cls.FATAL, message=message, status_code=status_code)

    def __repr__(self):
        return f"OperationResult({self.status!r}, value={self.value!r}, status_code={self.status_code!r})"


# =============================================================================
# GitHub REST Client
# =============================================================================

class GitHubTeamsClient:
    """
    Thin client for the organization team endpoints.

    Args:
        token: Personal access token with admin:org scope
        org: Organization login
        session: Optional requests.Session (injected by tests)
        timeout: Per-request timeout in seconds
    """

    def __init__(self, token: str, org: str, session: Optional[requests.Session] = None,
                 timeout: float = 30):
        if not token:
            raise GitHubConfigError("GitHub token not found. Set the GITHUB_TOKEN environment variable.")
        if not org:
            raise GitHubConfigError("GitHub organization not set. Set the GITHUB_ORG environment variable.")
        self.org = org
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'token {token}',
            'Accept': 'application/vnd.github.v3+json',
        })

    def _request(self, method: str, path: str, **kwargs):
        url = f"{GITHUB_API_URL}{path}"
        return self.session.request(method, url, timeout=self.timeout, **kwargs)

    def create_team(self, name: str, description: str, privacy: str = 'closed') -> OperationResult:
        """
        Create a team. Returns the new slug on 201, CONFLICT on 422
        (a team with that name already exists).
        """
        payload = {'name': name, 'description': description, 'privacy': privacy}
        try:
            response = self._request('POST', f"/orgs/{self.org}/teams", json=payload)
        except requests.RequestException as e:
            return OperationResult.fatal(f"Failed to create team {name}: {e}")

        if response.status_code == 201:
            return OperationResult.success(response.json()['slug'], status_code=201)
        if response.status_code == 422:
            return OperationResult.conflict(f"Team {name} already exists", status_code=422)
        return OperationResult.fatal(f"Failed to create team {name}: {response.text}",
                                     status_code=response.status_code)

    def find_team_slug(self, name: str, per_page: int = 100) -> OperationResult:
        """Look up an existing team's slug by exact name, across all pages."""
        page = 1
        while True:
            try:
                response = self._request('GET', f"/orgs/{self.org}/teams",
                                         params={'per_page': per_page, 'page': page})
            except requests.RequestException as e:
                return OperationResult.fatal(f"Failed to list teams: {e}")

            if response.status_code != 200:
                return OperationResult.fatal(f"Failed to list teams: {response.text}",
                                             status_code=response.status_code)

            teams = response.json()
            for team in teams:
                if team.get('name') == name:
                    return OperationResult.success(team['slug'], status_code=200)
            if len(teams) < per_page:
                return OperationResult.fatal(f"Team {name} not found.")
            page += 1

    def add_member(self, team_slug: str, username: str) -> OperationResult:
        try:
            response = self._request('PUT', f"/orgs/{self.org}/teams/{team_slug}/memberships/{username}",
                                     json={'role': 'member'})
        except requests.RequestException as e:
            return OperationResult.fatal(f"Could not add {username}: {e}")

        if response.status_code in (200, 201):
            return OperationResult.success(status_code=response.status_code)
        return OperationResult.fatal(f"Could not add {username} (may not exist or already invited)",
                                     status_code=response.status_code)

    def grant_repo_access(self, team_slug: str, repo_name: str, permission: str = 'push') -> OperationResult:
        try:
            response = self._request('PUT', f"/orgs/{self.org}/teams/{team_slug}/repos/{self.org}/{repo_name}",
                                     json={'permission': permission})
        except requests.RequestException as e:
            return OperationResult.fatal(f"Failed to grant access to {repo_name}: {e}")

        if response.status_code == 204:
            return OperationResult.success(status_code=204)
        return OperationResult.fatal(f"Failed to grant access to {repo_name}: {response.text}",
                                     status_code=response.status_code)


# =============================================================================
# Team Synchronizer
# =============================================================================

def group_by_team(registrations: List[dict]) -> Dict[str, dict]:
    """
    Group registration rows into teams keyed "{topic}-Team{n}".
    The first member's sub-project names the team.
    """
    teams = OrderedDict()
    for reg in registrations:
        key = f"{reg['Topic']}-Team{reg['TeamNumber']}"
        if key not in teams:
            teams[key] = {
                'topic': reg['Topic'],
                'team_number': reg['TeamNumber'],
                'sub_project': reg['SubProject'],
                'members': [],
            }
        teams[key]['members'].append({
            'name': reg.get('Name', ''),
            'github_username': str(reg.get('GitHubUsername', '') or '').strip(),
            'email': reg.get('Email', ''),
        })
    return teams


def github_team_name(team_number, sub_project: str) -> str:
    """e.g. 3, Student_A_Pothole_Detector -> Team-3-A-Pothole-Detector"""
    short = sub_project.replace('Student_', '', 1).replace('_', '-')
    return f"Team-{team_number}-{short}"


class TeamSynchronizer:
    """
    Reconciles GitHub teams with the registration roster.

    Args:
        store: Backend holding the Registrations table
        client: GitHubTeamsClient for the target organization
        repositories: Topic -> repository name (defaults to TOPIC_REPOSITORIES)
        verbose: Whether to print progress messages
    """

    TOPIC_REPOSITORIES = {
        'Group_01_Computer_Vision': 'M2-IA-Group_01_Computer_Vision',
        'Group_02_NLP': 'M2-IA-Group_02_NLP',
        'Group_03_Time_Series': 'M2-IA-Group_03_Time_Series',
        'Group_04_Audio_Processing': 'M2-IA-Group_04_Audio_Processing',
        'Group_05_Agentic_AI': 'M2-IA-Group_05_Agentic_AI',
        'Group_06_MLOps': 'M2-IA-Group_06_MLOps',
    }

    REPO_PERMISSION = 'push'
    TEAM_PRIVACY = 'closed'

    def __init__(self, store: RegistrationStore, client: GitHubTeamsClient,
                 repositories: Optional[Dict[str, str]] = None, verbose: bool = True):
        self.store = store
        self.client = client
        self.repositories = dict(repositories if repositories is not None else self.TOPIC_REPOSITORIES)
        self.verbose = verbose

    def log(self, message: str):
        """Print a log message if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime("%H:%M:%S")
            print(f"[{timestamp}] {message}")

    def sync(self) -> dict:
        """
        Sync every team in the Registrations table.

        Returns:
            Summary dict with teams_total, succeeded, failed, failures and teams.
            On a missing table or unexpected error it carries an 'error' key.
        """
        summary = {
            'teams_total': 0,
            'succeeded': 0,
            'failed': 0,
            'failures': [],
            'teams': [],
        }

        try:
            registrations = self.store.require_registrations()
        except StoreError as e:
            self.log(f"✗ {e}")
            summary['error'] = str(e)
            return summary

        teams = group_by_team(registrations)
        summary['teams_total'] = len(teams)
        self.log(f"Found {len(teams)} teams to process.")

        for team_key, team_data in teams.items():
            try:
                outcome = self.sync_team(team_data)
            except Exception as e:
                # One broken team must not stop the rest
                outcome = {'team': team_key, 'ok': False, 'error': str(e)}

            outcome['key'] = team_key
            summary['teams'].append(outcome)
            if outcome['ok']:
                summary['succeeded'] += 1
                self.log(f"✓ Processed team: {team_key}")
            else:
                summary['failed'] += 1
                summary['failures'].append({'team': team_key, 'error': outcome['error']})
                self.log(f"✗ Error processing {team_key}: {outcome['error']}")

        self.log(f"Summary: {summary['succeeded']} teams processed, {summary['failed']} errors.")
        return summary

    def sync_team(self, team_data: dict) -> dict:
        """Create (or resolve) one team, invite its members and grant its repository."""
        sub_project = str(team_data['sub_project'])
        team_name = github_team_name(team_data['team_number'], sub_project)
        repo = self.repositories.get(team_data['topic'])
        outcome = {
            'team': team_name,
            'repo': repo,
            'ok': False,
            'error': None,
            'created': False,
            'invited': [],
            'invite_failures': [],
        }

        # 1. Create team (or resolve the existing one)
        created = self.client.create_team(team_name, f"Students working on {sub_project}",
                                          privacy=self.TEAM_PRIVACY)
        if created.status == OperationResult.CONFLICT:
            created = self.client.find_team_slug(team_name)
        else:
            outcome['created'] = created.ok
        if not created.ok:
            outcome['error'] = created.message
            return outcome
        team_slug = created.value

        # 2. Invite members
        for member in team_data['members']:
            username = member['github_username']
            if not username:
                self.log(f"  ⚠ Warning: {member['name']} has no GitHub username")
                outcome['invite_failures'].append(member['name'])
                continue
            invited = self.client.add_member(team_slug, username)
            if invited.ok:
                outcome['invited'].append(username)
            else:
                self.log(f"  ⚠ Warning: {invited.message}")
                outcome['invite_failures'].append(username)

        # 3. Repository access
        if not repo:
            outcome['error'] = f"No repository configured for topic {team_data['topic']}"
            return outcome
        granted = self.client.grant_repo_access(team_slug, repo, permission=self.REPO_PERMISSION)
        if not granted.ok:
            outcome['error'] = granted.message
            return outcome

        outcome['ok'] = True
        self.log(f"  → Team: {team_name}, Members: {len(team_data['members'])}, Repo: {repo}")
        return outcome

    def print_report(self, summary: dict):
        """Print a sync report."""
        print("\n" + "=" * 70)
        print("GITHUB SYNC COMPLETE")
        print("=" * 70)
        if summary.get('error'):
            print(f"  ✗ {summary['error']}")
        print(f"  ✓ Teams processed: {summary['succeeded']}")
        print(f"  ✗ Errors: {summary['failed']}")

        for team in summary['teams']:
            if team.get('invite_failures'):
                print(f"  ⚠ {team['key']}: not invited: {', '.join(team['invite_failures'])}")
        for failure in summary['failures']:
            print(f"  ✗ {failure['team']}: {failure['error']}")
        print("=" * 70)


# =============================================================================
# Command Line Entry Point
# =============================================================================

def main(argv=None) -> int:
    """Run the sync against the registration workbook. Returns the exit code."""
    parser = argparse.ArgumentParser(description='Sync registered teams to GitHub')
    parser.add_argument('--workbook', default=os.environ.get('REGISTRATION_WORKBOOK', DEFAULT_WORKBOOK))
    parser.add_argument('--org', default=os.environ.get('GITHUB_ORG', DEFAULT_ORG))
    parser.add_argument('--quiet', action='store_true')
    args = parser.parse_args(argv)

    try:
        client = GitHubTeamsClient(os.environ.get('GITHUB_TOKEN', ''), args.org)
        synchronizer = TeamSynchronizer(ExcelRegistrationStore(args.workbook), client,
                                        verbose=not args.quiet)
        summary = synchronizer.sync()
    except GitHubConfigError as e:
        print(f"Error: {e}")
        return 2
    except Exception as e:
        traceback.print_exc()
        print(f"Error: {e}")
        return 1

    synchronizer.print_report(summary)
    return 0 if not summary.get('error') and summary['failed'] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
