"""
Topic Registration Manager
==========================

Backend logic for the balanced topic registration workflow.

Rules:
1. A matricule or email can only register once (compared case-insensitively)
2. Balanced selection: only topics at the current minimum enrollment are open
3. Every 3 students in a topic form one team, numbered in registration order
4. A student's position in the team (0, 1, 2) picks one of the topic's
   3 sub-projects
5. Registrations are immutable once written

All reads and writes of a registration happen under one process-wide lock,
so two concurrent submissions never see the same topic count or both pass
the duplicate check against each other.
"""

import threading
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional

from registration_store import RegistrationStore, team_key


# Shared by every manager in the process
REGISTRATION_LOCK = threading.Lock()
LOCK_TIMEOUT_SECONDS = 30

TEAM_SIZE = 3

REQUIRED_FIELDS = ['selectedTopic', 'matricule', 'email', 'fullName', 'githubUsername']


def normalize_matricule(value) -> str:
    return str(value).strip().upper()


def normalize_email(value) -> str:
    return str(value).strip().lower()


def error_response(message: str) -> dict:
    return {'result': 'error', 'message': message}


class RegistrationManager:
    """
    Registration handler, availability calculator and status query
    over a RegistrationStore.
    """

    TOPICS = [
        'Group_01_Computer_Vision',
        'Group_02_NLP',
        'Group_03_Time_Series',
        'Group_04_Audio_Processing',
        'Group_05_Agentic_AI',
        'Group_06_MLOps',
    ]

    # Sub-projects per topic, indexed by position in team
    SUBPROJECTS = {
        'Group_01_Computer_Vision': ['Student_A_Pothole_Detector', 'Student_B_Cocoa_Pod_Counter',
                                     'Student_C_Cassava_Disease_Classifier'],
        'Group_02_NLP': ['Student_A_Pidgin_Translator', 'Student_B_Yemba_Autocorrect',
                         'Student_C_Dschang_Chatbot'],
        'Group_03_Time_Series': ['Student_A_Market_Forecaster', 'Student_B_Electricity_Predictor',
                                 'Student_C_Student_Success'],
        'Group_04_Audio_Processing': ['Student_A_Dialect_Keyword_Spotter', 'Student_B_Logging_Detector',
                                      'Student_C_Cameroonian_ASR'],
        'Group_05_Agentic_AI': ['Student_A_MoMo_Agent', 'Student_B_Penal_Code_Assistant',
                                'Student_C_Tour_Guide'],
        'Group_06_MLOps': ['Student_A_Feature_Store', 'Student_B_Experiment_Tracker',
                           'Student_C_Data_Validator'],
    }

    def __init__(self, store: RegistrationStore,
                 topics: Optional[List[str]] = None,
                 subprojects: Optional[Dict[str, List[str]]] = None,
                 lock=None,
                 lock_timeout: float = LOCK_TIMEOUT_SECONDS,
                 verbose: bool = False):
        """
        Args:
            store: Backend holding the Registrations and Teams tables
            topics: Fixed topic list (defaults to TOPICS)
            subprojects: Topic -> 3 sub-project names (defaults to SUBPROJECTS)
            lock: Lock serializing registrations (defaults to REGISTRATION_LOCK)
            lock_timeout: Seconds to wait for the lock before giving up
            verbose: Whether to print progress messages
        """
        self.store = store
        self.topics = list(topics if topics is not None else self.TOPICS)
        self.subprojects = dict(subprojects if subprojects is not None else self.SUBPROJECTS)
        self.lock = lock if lock is not None else REGISTRATION_LOCK
        self.lock_timeout = lock_timeout
        self.verbose = verbose

        for topic in self.topics:
            if len(self.subprojects.get(topic, [])) != TEAM_SIZE:
                raise ValueError(f"Topic {topic} needs exactly {TEAM_SIZE} sub-projects")

    def log(self, message: str):
        """Print a log message if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime("%H:%M:%S")
            print(f"[{timestamp}] {message}")

    # =========================================================================
    # Availability
    # =========================================================================

    def topic_counts(self, rows: Optional[List[dict]] = None) -> Dict[str, int]:
        """Count registrations per fixed topic. Unknown topics are ignored."""
        if rows is None:
            rows = self.store.registrations()
        counts = OrderedDict((topic, 0) for topic in self.topics)
        for row in rows:
            topic = row.get('Topic')
            if topic in counts:
                counts[topic] += 1
        return counts

    def calculate_availability(self, rows: Optional[List[dict]] = None) -> Dict[str, bool]:
        """
        Determine which topics are open under the balanced selection rule:
        a topic is open only if its count equals the minimum count.
        """
        counts = self.topic_counts(rows)
        if not counts:
            return OrderedDict()
        min_count = min(counts.values())
        return OrderedDict((topic, count <= min_count) for topic, count in counts.items())

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, data: dict) -> dict:
        """
        Validate a submission and assign topic, team and sub-project.

        Args:
            data: Dict with selectedTopic, matricule, email, fullName, githubUsername

        Returns:
            Success dict with topic/team/project, or an error dict with a message
        """
        if not self.lock.acquire(timeout=self.lock_timeout):
            self.log("Lock wait timed out")
            return error_response("The server is busy processing other registrations. Please try again.")
        try:
            return self._register_locked(data)
        finally:
            self.lock.release()

    def _register_locked(self, data: dict) -> dict:
        for field in REQUIRED_FIELDS:
            value = data.get(field)
            if value is None or isinstance(value, (dict, list)) or not str(value).strip():
                return error_response(f"Missing required field: {field}")

        selected_topic = str(data['selectedTopic']).strip()
        matricule = normalize_matricule(data['matricule'])
        email = normalize_email(data['email'])
        full_name = str(data['fullName']).strip()
        github_username = str(data['githubUsername']).strip()

        rows = self.store.registrations()

        # 1. Duplicate matricule or email
        for row in rows:
            if normalize_matricule(row.get('Matricule', '')) == matricule:
                self.log(f"Rejected duplicate matricule {matricule}")
                return error_response("This Matricule is already registered. You cannot register twice.")
            if normalize_email(row.get('Email', '')) == email:
                self.log(f"Rejected duplicate email {email}")
                return error_response("This Email is already registered. You cannot register twice.")

        if selected_topic not in self.topics:
            return error_response(f"Unknown topic: {selected_topic}")

        # 2. Balanced selection
        availability = self.calculate_availability(rows)
        if not availability[selected_topic]:
            self.log(f"Rejected {matricule}: {selected_topic} is locked")
            return error_response(
                "This topic is temporarily locked. Please choose another topic to balance the groups.")

        # 3. Team slot from the number already in this topic
        topic_count = self.topic_counts(rows)[selected_topic]
        team_number = topic_count // TEAM_SIZE + 1
        position = topic_count % TEAM_SIZE
        sub_project = self.subprojects[selected_topic][position]

        self.store.append_registration({
            'Timestamp': datetime.now().isoformat(timespec='seconds'),
            'Name': full_name,
            'Matricule': matricule,
            'Email': email,
            'GitHubUsername': github_username,
            'Topic': selected_topic,
            'TeamNumber': team_number,
            'SubProject': sub_project,
        })
        self.update_team_aggregate(selected_topic, team_number)

        self.log(f"Registered {matricule} -> {selected_topic}, Team {team_number}, {sub_project}")

        return {
            'result': 'success',
            'message': f"Registered! You are in {selected_topic}, Team {team_number}, assigned to: {sub_project}",
            'topic': selected_topic,
            'team': team_number,
            'project': sub_project,
        }

    def update_team_aggregate(self, topic: str, team_number: int):
        """Increment the member count of a team, creating its row if needed."""
        key = (topic, int(team_number))
        for record in self.store.teams():
            if team_key(record) == key:
                record['MemberCount'] = int(record['MemberCount']) + 1
                self.store.put_team(record)
                return
        self.store.put_team({
            'Topic': topic,
            'TeamNumber': int(team_number),
            'MemberCount': 1,
            'SubProjectsAssigned': ', '.join(self.subprojects[topic]),
        })

    # =========================================================================
    # Status
    # =========================================================================

    def check_status(self, matricule) -> dict:
        """Look up a student's stored assignment by matricule."""
        if matricule is None or not str(matricule).strip():
            return {'registered': False}

        normalized = normalize_matricule(matricule)
        for row in self.store.registrations():
            if normalize_matricule(row.get('Matricule', '')) == normalized:
                return {
                    'registered': True,
                    'name': row.get('Name'),
                    'topic': row.get('Topic'),
                    'team': row.get('TeamNumber'),
                    'subProject': row.get('SubProject'),
                }
        return {'registered': False}
