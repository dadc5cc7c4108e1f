"""Tests for the Flask registration endpoints."""
import json

import numpy as np
import pytest

from registration_manager import RegistrationManager
from registration_store import InMemoryRegistrationStore
from webapp.app import app, clean_for_json


@pytest.fixture
def store():
    return InMemoryRegistrationStore()


@pytest.fixture
def client(store):
    app.config['TESTING'] = True
    app.config['REGISTRATION_MANAGER'] = RegistrationManager(store)
    with app.test_client() as client:
        yield client
    app.config['REGISTRATION_MANAGER'] = None


def submission(**overrides):
    data = {
        'selectedTopic': 'Group_05_Agentic_AI',
        'matricule': 'cm-uds-123',
        'email': 'Student@uds.cm',
        'fullName': 'Ngono Marie',
        'githubUsername': 'ngono-m',
    }
    data.update(overrides)
    return data


def post_json(client, data, content_type='text/plain;charset=utf-8'):
    # Browser form clients post JSON as text/plain to avoid CORS preflight
    return client.post('/', data=json.dumps(data), content_type=content_type)


def test_availability_all_open_on_empty_table(client):
    response = client.get('/')
    assert response.status_code == 200
    body = response.get_json()
    assert list(body) == RegistrationManager.TOPICS
    assert all(body.values())


def test_register_success(client, store):
    response = post_json(client, submission())

    assert response.status_code == 200
    body = response.get_json()
    assert body['result'] == 'success'
    assert body['topic'] == 'Group_05_Agentic_AI'
    assert body['team'] == 1
    assert body['project'] == 'Student_A_MoMo_Agent'
    assert len(store.registrations()) == 1


def test_register_accepts_application_json(client):
    response = post_json(client, submission(), content_type='application/json')
    assert response.get_json()['result'] == 'success'


def test_register_closes_topic_until_others_catch_up(client):
    post_json(client, submission())
    availability = client.get('/').get_json()

    assert availability['Group_05_Agentic_AI'] is False
    assert sum(availability.values()) == 5


def test_duplicate_is_error_with_http_200(client, store):
    post_json(client, submission())
    response = post_json(client, submission(selectedTopic='Group_02_NLP', matricule=' CM-UDS-123 ',
                                            email='other@uds.cm'))

    assert response.status_code == 200
    assert response.get_json()['result'] == 'error'
    assert 'Matricule' in response.get_json()['message']
    assert len(store.registrations()) == 1


def test_empty_body(client):
    response = client.post('/', data='')
    body = response.get_json()
    assert response.status_code == 200
    assert body['result'] == 'error'
    assert 'No request body received' in body['message']


def test_malformed_body(client):
    response = client.post('/', data='{not json', content_type='text/plain')
    assert response.status_code == 200
    assert response.get_json() == {'result': 'error', 'message': 'Request body is not valid JSON.'}

    response = client.post('/', data='[1, 2]', content_type='text/plain')
    assert response.get_json()['result'] == 'error'


def test_check_status(client):
    post_json(client, submission())

    response = client.get('/?action=checkStatus&matricule=Cm-Uds-123')
    assert response.get_json() == {
        'registered': True,
        'name': 'Ngono Marie',
        'topic': 'Group_05_Agentic_AI',
        'team': 1,
        'subProject': 'Student_A_MoMo_Agent',
    }

    response = client.get('/?action=checkStatus&matricule=unknown')
    assert response.get_json() == {'registered': False}


def test_unexpected_error_becomes_structured_500(client):
    class Exploding:
        def register(self, data):
            raise RuntimeError('workbook locked by another process')

        def calculate_availability(self):
            raise RuntimeError('workbook locked by another process')

    app.config['REGISTRATION_MANAGER'] = Exploding()

    response = post_json(client, submission())
    assert response.status_code == 500
    assert response.get_json() == {'result': 'error', 'message': 'workbook locked by another process'}

    response = client.get('/')
    assert response.status_code == 500
    assert response.get_json()['result'] == 'error'


def test_workbook_backed_manager(tmp_path):
    app.config['TESTING'] = True
    app.config['REGISTRATION_MANAGER'] = None
    app.config['REGISTRATION_WORKBOOK'] = str(tmp_path / 'registrations.xlsx')
    try:
        with app.test_client() as client:
            assert post_json(client, submission()).get_json()['team'] == 1
            status = client.get('/?action=checkStatus&matricule=CM-UDS-123').get_json()
        assert status['registered'] is True
        assert status['team'] == 1
        assert (tmp_path / 'registrations.xlsx').exists()
    finally:
        app.config['REGISTRATION_MANAGER'] = None


def test_clean_for_json_handles_numpy_and_nan():
    cleaned = clean_for_json({'team': np.int64(2), 'score': float('nan'), 'rows': [np.float64(1.5)]})
    assert cleaned == {'team': 2, 'score': None, 'rows': [1.5]}
    assert type(cleaned['team']) is int


def test_cors_header_on_get_and_post(client):
    origin = {'Origin': 'https://form.example'}

    response = client.get('/', headers=origin)
    assert response.headers.get('Access-Control-Allow-Origin') == '*'

    response = client.post('/', data=json.dumps(submission()), content_type='text/plain', headers=origin)
    assert response.get_json()['result'] == 'success'
    assert response.headers.get('Access-Control-Allow-Origin') == '*'


def test_oversized_body_gets_413(client, store):
    padding = 'x' * (app.config['MAX_CONTENT_LENGTH'] + 1)
    response = post_json(client, submission(fullName=padding))

    assert response.status_code == 413
    assert response.get_json()['result'] == 'error'
    assert store.registrations() == []
