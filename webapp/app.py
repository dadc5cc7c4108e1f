"""
Topic Registration Web Application
==================================

Flask-based backend for the topic registration form.

Endpoints (both on /):
    GET                                  -> topic availability {topic: open}
    GET  ?action=checkStatus&matricule=  -> a student's registration status
    POST JSON body                       -> register a student

Validation failures are answered with {"result": "error", "message": ...}
and HTTP 200. Oversized bodies get their HTTP error code (413); only
unexpected errors produce a 500.
"""

# =============================================================================
# Imports
# =============================================================================

import os
import sys
import json
import math
import traceback

import numpy as np
import pandas as pd
from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

# Add parent directory to path to import the registration modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from registration_manager import RegistrationManager
from registration_store import ExcelRegistrationStore


# =============================================================================
# Flask App Configuration
# =============================================================================

app = Flask(__name__)
app.json.sort_keys = False  # availability keeps the topic order
CORS(app)  # the registration form is served from another origin
app.config['MAX_CONTENT_LENGTH'] = 64 * 1024  # registration bodies are tiny
app.config['REGISTRATION_WORKBOOK'] = os.environ.get(
    'REGISTRATION_WORKBOOK',
    os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'registrations.xlsx')
)
# Set to a RegistrationManager to bypass the workbook (used by tests)
app.config['REGISTRATION_MANAGER'] = None


def get_manager():
    """Return the configured manager, building the workbook-backed one lazily."""
    manager = app.config.get('REGISTRATION_MANAGER')
    if manager is None:
        manager = RegistrationManager(ExcelRegistrationStore(app.config['REGISTRATION_WORKBOOK']))
        app.config['REGISTRATION_MANAGER'] = manager
    return manager


# =============================================================================
# Utility Functions
# =============================================================================

def clean_for_json(obj):
    """
    Recursively clean an object for JSON serialization.
    Handles NaN, Infinity, numpy types, and pandas NA values.
    """
    if isinstance(obj, dict):
        return {k: clean_for_json(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [clean_for_json(item) for item in obj]
    elif isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    elif isinstance(obj, (np.integer, np.floating)):
        if np.isnan(obj) or np.isinf(obj):
            return None
        return obj.item()
    elif isinstance(obj, (str, bool, int)) or obj is None:
        return obj
    elif pd.isna(obj):
        return None
    return obj


def json_response(obj, status=200):
    return jsonify(clean_for_json(obj)), status


# =============================================================================
# Routes
# =============================================================================

@app.route('/', methods=['GET'])
def status_or_availability():
    """
    Report topic availability, or a student's status when
    action=checkStatus is given.
    """
    try:
        manager = get_manager()
        if request.args.get('action') == 'checkStatus':
            return json_response(manager.check_status(request.args.get('matricule')))
        return json_response(manager.calculate_availability())
    except Exception as e:
        traceback.print_exc()
        return json_response({'result': 'error', 'message': str(e)}, 500)


@app.route('/', methods=['POST'])
def register():
    """
    Register a student.

    Expects a JSON body (any content type):
        selectedTopic, matricule, email, fullName, githubUsername

    Returns:
        JSON with result "success" and the assignment, or "error" and a message
    """
    try:
        body = request.get_data(as_text=True)
        if not body or not body.strip():
            return json_response({
                'result': 'error',
                'message': 'No request body received. Confirm the web app URL and method are correct.'
            })

        try:
            data = json.loads(body)
        except ValueError:
            return json_response({'result': 'error', 'message': 'Request body is not valid JSON.'})
        if not isinstance(data, dict):
            return json_response({'result': 'error', 'message': 'Request body must be a JSON object.'})

        return json_response(get_manager().register(data))

    except HTTPException as e:
        return json_response({'result': 'error', 'message': e.description}, e.code)
    except Exception as e:
        traceback.print_exc()
        return json_response({'result': 'error', 'message': str(e)}, 500)


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(debug=False, host='0.0.0.0', port=port, threaded=True)
