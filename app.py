"""
Flask application for the chemotherapy dose calculator.
"""

import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS

from api.dose_api import dose_api, get_registry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app() -> Flask:
    app = Flask(__name__)
    CORS(app)
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dose-calculator-dev-key')

    app.register_blueprint(dose_api)
    logger.info("Dose API registered successfully")

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'regimens': len(get_registry().catalog)})

    return app


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=int(os.environ.get('PORT', 8084)), debug=False)
