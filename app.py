import json
import logging
import os
import sqlite3
import sys

from flask import Blueprint, Flask, current_app, g, jsonify, request
from flask_cors import CORS

from rule_engine import (
    Rule,
    RuleError,
    combine_rules,
    evaluate_rule,
    node_from_dict,
    node_to_dict,
    parse_rule,
)

_LOGGING_CONFIGURED = False


def configure_logging(level='INFO'):
    """Send application and rule engine logs to stderr, once per process."""
    global _LOGGING_CONFIGURED
    level = getattr(logging, str(level).upper(), logging.INFO)
    if not _LOGGING_CONFIGURED:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logging.getLogger().addHandler(handler)
        _LOGGING_CONFIGURED = True
    logging.getLogger().setLevel(level)


# Database helpers

def get_db():
    """Return the sqlite connection for the current app context."""
    if 'db' not in g:
        g.db = sqlite3.connect(current_app.config['DATABASE'])
    return g.db


def close_db(exc=None):
    db = g.pop('db', None)
    if db is not None:
        db.close()


def init_db(conn):
    # Create the rules table
    conn.execute('''
    CREATE TABLE IF NOT EXISTS rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        rule_string TEXT NOT NULL,
        rule_ast TEXT NOT NULL
    )
    ''')
    conn.commit()


def _row_to_rule(row):
    rule_id, name, rule_string, rule_ast_json = row
    root = node_from_dict(json.loads(rule_ast_json))
    return Rule(name=name, rule_string=rule_string, root=root, id=rule_id)


# Save rule to database
def save_rule_to_db(conn, rule):
    rule_ast_json = json.dumps(node_to_dict(rule.root))
    cursor = conn.execute('''
    INSERT INTO rules (name, rule_string, rule_ast)
    VALUES (?, ?, ?)
    ''', (rule.name, rule.rule_string, rule_ast_json))
    conn.commit()
    rule.id = cursor.lastrowid
    return rule


# Retrieve rule by ID
def get_rule_by_id(conn, rule_id):
    row = conn.execute(
        'SELECT id, name, rule_string, rule_ast FROM rules WHERE id = ?', (rule_id,)
    ).fetchone()
    return _row_to_rule(row) if row else None


def get_rules_by_ids(conn, rule_ids):
    """Fetch rules in the order of ``rule_ids``; returns the rules and the ids not found."""
    rules, missing = [], []
    for rule_id in rule_ids:
        rule = get_rule_by_id(conn, rule_id)
        if rule is None:
            missing.append(rule_id)
        else:
            rules.append(rule)
    return rules, missing


def list_rules_from_db(conn):
    rows = conn.execute('SELECT id, name, rule_string, rule_ast FROM rules ORDER BY id').fetchall()
    return [_row_to_rule(row) for row in rows]


def update_rule_in_db(conn, rule):
    conn.execute('''
    UPDATE rules SET name = ?, rule_string = ?, rule_ast = ? WHERE id = ?
    ''', (rule.name, rule.rule_string, json.dumps(node_to_dict(rule.root)), rule.id))
    conn.commit()
    return rule


def delete_rule_from_db(conn, rule_id):
    cursor = conn.execute('DELETE FROM rules WHERE id = ?', (rule_id,))
    conn.commit()
    return cursor.rowcount > 0


# Routes

rules_bp = Blueprint('rules', __name__, url_prefix='/api/rules')


class InvalidRequest(Exception):
    pass


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


def _require(body, field, expected_type):
    value = body.get(field)
    if not isinstance(value, expected_type) or (isinstance(value, bool) and expected_type is not bool):
        raise InvalidRequest(f"'{field}' is required")
    return value


def _rule_not_found(rule_id):
    return jsonify({"error": f"Rule {rule_id} not found"}), 404


@rules_bp.errorhandler(InvalidRequest)
def handle_invalid_request(e):
    return jsonify({"error": str(e)}), 400


@rules_bp.errorhandler(RuleError)
def handle_rule_error(e):
    current_app.logger.warning("Rule error on %s %s: %s", request.method, request.path, e)
    return jsonify({"error": str(e)}), 400


# Create a new rule
@rules_bp.route('/create', methods=['POST'])
def create_rule():
    body = _json_body()
    name = _require(body, 'name', str)
    rule = Rule.from_string(name, _require(body, 'ruleString', str))
    save_rule_to_db(get_db(), rule)
    current_app.logger.info("Created rule %s (%s)", rule.id, rule.name)
    return jsonify(rule.to_dict()), 201


# Combine stored rules into a new rule
@rules_bp.route('/combine', methods=['POST'])
def combine():
    body = _json_body()
    name = _require(body, 'name', str)
    rule_ids = _require(body, 'ruleIds', list)
    if not rule_ids:
        raise InvalidRequest("'ruleIds' must not be empty")
    if not all(isinstance(rule_id, int) and not isinstance(rule_id, bool) for rule_id in rule_ids):
        raise InvalidRequest("'ruleIds' must be a list of rule ids")

    conn = get_db()
    rules, missing = get_rules_by_ids(conn, rule_ids)
    if missing:
        return jsonify({"error": f"Rules not found: {missing}"}), 404

    root, rule_string = combine_rules([rule.root for rule in rules], [rule.rule_string for rule in rules])
    combined_rule = save_rule_to_db(conn, Rule(name=name, rule_string=rule_string, root=root))
    current_app.logger.info("Combined rules %s into rule %s", rule_ids, combined_rule.id)
    return jsonify(combined_rule.to_dict()), 201


# Evaluate data against a stored rule, or against an ad-hoc rule string
@rules_bp.route('/evaluate', methods=['POST'])
def evaluate():
    body = _json_body()
    data = _require(body, 'data', dict)

    if 'ruleString' in body:
        root = parse_rule(_require(body, 'ruleString', str))
    else:
        rule_id = _require(body, 'ruleId', int)
        rule = get_rule_by_id(get_db(), rule_id)
        if rule is None:
            return _rule_not_found(rule_id)
        root = rule.root

    result = evaluate_rule(root, data)
    return jsonify({"result": result}), 200


@rules_bp.route('/update/<int:rule_id>', methods=['PUT'])
def update_rule(rule_id):
    body = _json_body()
    rule_string = _require(body, 'ruleString', str)

    conn = get_db()
    rule = get_rule_by_id(conn, rule_id)
    if rule is None:
        return _rule_not_found(rule_id)

    rule.replace(rule_string)
    if isinstance(body.get('name'), str):
        rule.name = body['name']
    update_rule_in_db(conn, rule)
    current_app.logger.info("Updated rule %s", rule_id)
    return jsonify(rule.to_dict()), 200


@rules_bp.route('/', methods=['GET'])
def list_rules():
    return jsonify([rule.to_dict() for rule in list_rules_from_db(get_db())]), 200


@rules_bp.route('/<int:rule_id>', methods=['GET'])
def get_rule(rule_id):
    rule = get_rule_by_id(get_db(), rule_id)
    if rule is None:
        return _rule_not_found(rule_id)
    return jsonify(rule.to_dict()), 200


@rules_bp.route('/<int:rule_id>', methods=['DELETE'])
def delete_rule(rule_id):
    if not delete_rule_from_db(get_db(), rule_id):
        return _rule_not_found(rule_id)
    current_app.logger.info("Deleted rule %s", rule_id)
    return jsonify({"message": f"Rule {rule_id} deleted"}), 200


# Flask application
def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_mapping(
        DATABASE=os.environ.get('RULE_ENGINE_DB', 'rule_engine.db'),
        LOG_LEVEL=os.environ.get('RULE_ENGINE_LOG_LEVEL', 'INFO'),
        CORS_ORIGINS=os.environ.get('RULE_ENGINE_CORS_ORIGINS', '*'),
        PORT=int(os.environ.get('PORT', '5001')),
    )
    if test_config is not None:
        app.config.update(test_config)

    configure_logging(app.config['LOG_LEVEL'])

    origins = app.config['CORS_ORIGINS']
    if isinstance(origins, str) and origins != '*':
        origins = [origin.strip() for origin in origins.split(',') if origin.strip()]
    CORS(app, origins=origins)

    app.teardown_appcontext(close_db)
    with app.app_context():
        init_db(get_db())

    app.register_blueprint(rules_bp)
    return app


if __name__ == '__main__':
    app = create_app()
    app.run(debug=True, port=app.config['PORT'])
