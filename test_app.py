import os
import sqlite3
import tempfile
import unittest

from app import create_app, get_db, get_rule_by_id, save_rule_to_db
from rule_engine import Rule


class TestRuleApi(unittest.TestCase):

    def setUp(self):
        self.db_fd, self.db_path = tempfile.mkstemp(suffix='.db')
        self.app = create_app({'DATABASE': self.db_path, 'TESTING': True})
        self.client = self.app.test_client()

    def tearDown(self):
        os.close(self.db_fd)
        os.unlink(self.db_path)

    def create(self, name, rule_string):
        response = self.client.post('/api/rules/create', json={'name': name, 'ruleString': rule_string})
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()

    def test_create_rule(self):
        rule = self.create('senior sales', "age > 30 AND department = 'Sales'")
        self.assertEqual(rule['name'], 'senior sales')
        self.assertEqual(rule['ruleString'], "age > 30 AND department = 'Sales'")
        self.assertEqual(rule['root']['type'], 'operator')
        self.assertEqual(rule['root']['value'], 'AND')
        self.assertEqual(
            rule['root']['right']['value'],
            {'attribute': 'department', 'operator': '==', 'literal': 'Sales'},
        )
        self.assertIsNone(rule['root']['right']['left'])

    def test_create_rule_syntax_error(self):
        response = self.client.post('/api/rules/create', json={'name': 'broken', 'ruleString': 'age >'})
        self.assertEqual(response.status_code, 400)
        self.assertIn('error', response.get_json())
        self.assertEqual(self.client.get('/api/rules/').get_json(), [])

    def test_create_rule_missing_fields(self):
        response = self.client.post('/api/rules/create', json={'ruleString': 'age > 3'})
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/rules/create', data='not json')
        self.assertEqual(response.status_code, 400)

    def test_evaluate_stored_rule(self):
        rule = self.create('senior sales', "age > 30 AND department = 'Sales'")
        response = self.client.post('/api/rules/evaluate', json={
            'ruleId': rule['id'],
            'data': {'age': 35, 'department': 'Sales'},
        })
        self.assertEqual(response.status_code, 200)
        self.assertIs(response.get_json()['result'], True)

        response = self.client.post('/api/rules/evaluate', json={
            'ruleId': rule['id'],
            'data': {'age': 25, 'department': 'Sales'},
        })
        self.assertIs(response.get_json()['result'], False)

    def test_evaluate_rule_string(self):
        response = self.client.post('/api/rules/evaluate', json={
            'ruleString': 'salary > 50000 OR experience > 5',
            'data': {'salary': 1000, 'experience': 8},
        })
        self.assertEqual(response.status_code, 200)
        self.assertIs(response.get_json()['result'], True)

    def test_evaluate_errors(self):
        rule = self.create('r', 'age > 30')
        response = self.client.post('/api/rules/evaluate', json={'ruleId': rule['id'], 'data': {}})
        self.assertEqual(response.status_code, 400)
        self.assertIn('age', response.get_json()['error'])

        response = self.client.post('/api/rules/evaluate', json={'ruleId': 999, 'data': {'age': 1}})
        self.assertEqual(response.status_code, 404)

        response = self.client.post('/api/rules/evaluate', json={'ruleId': rule['id']})
        self.assertEqual(response.status_code, 400)

    def test_combine_rules(self):
        first = self.create('age', 'age > 30')
        second = self.create('salary', 'salary > 50000')
        response = self.client.post('/api/rules/combine', json={
            'ruleIds': [first['id'], second['id']],
            'name': 'age or salary',
        })
        self.assertEqual(response.status_code, 201)
        combined = response.get_json()
        self.assertEqual(combined['ruleString'], '(age > 30) OR (salary > 50000)')
        self.assertEqual(combined['root']['value'], 'OR')
        self.assertEqual(combined['root']['left'], first['root'])
        self.assertEqual(combined['root']['right'], second['root'])

        response = self.client.post('/api/rules/evaluate', json={
            'ruleId': combined['id'],
            'data': {'age': 20, 'salary': 60000},
        })
        self.assertIs(response.get_json()['result'], True)

    def test_combine_majority_connective(self):
        ids = [
            self.create('a', 'a = 1 AND b = 2')['id'],
            self.create('b', 'c = 3 AND d = 4')['id'],
            self.create('c', 'e = 5 OR f = 6')['id'],
        ]
        combined = self.client.post('/api/rules/combine', json={'ruleIds': ids, 'name': 'all'}).get_json()
        self.assertEqual(combined['root']['value'], 'AND')
        self.assertEqual(combined['root']['left']['value'], 'AND')

    def test_combine_errors(self):
        rule = self.create('r', 'age > 30')
        response = self.client.post('/api/rules/combine', json={'ruleIds': [], 'name': 'x'})
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/rules/combine', json={'ruleIds': [rule['id'], 42], 'name': 'x'})
        self.assertEqual(response.status_code, 404)
        response = self.client.post('/api/rules/combine', json={'ruleIds': ['abc'], 'name': 'x'})
        self.assertEqual(response.status_code, 400)

    def test_combined_rule_survives_source_deletion(self):
        first = self.create('age', 'age > 30')
        second = self.create('salary', 'salary > 50000')
        combined = self.client.post('/api/rules/combine', json={
            'ruleIds': [first['id'], second['id']],
            'name': 'combined',
        }).get_json()
        self.client.delete(f"/api/rules/{first['id']}")
        response = self.client.get(f"/api/rules/{combined['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['root']['left'], first['root'])

    def test_update_rule(self):
        rule = self.create('r', 'age > 30')
        response = self.client.put(f"/api/rules/update/{rule['id']}", json={'ruleString': 'age < 20'})
        self.assertEqual(response.status_code, 200)
        updated = response.get_json()
        self.assertEqual(updated['ruleString'], 'age < 20')
        self.assertEqual(updated['root']['value']['operator'], '<')
        self.assertEqual(self.client.get(f"/api/rules/{rule['id']}").get_json(), updated)

    def test_update_rule_errors(self):
        rule = self.create('r', 'age > 30')
        response = self.client.put(f"/api/rules/update/{rule['id']}", json={'ruleString': 'age <'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.client.get(f"/api/rules/{rule['id']}").get_json(), rule)

        response = self.client.put('/api/rules/update/999', json={'ruleString': 'age < 20'})
        self.assertEqual(response.status_code, 404)

    def test_list_get_delete(self):
        first = self.create('one', 'age > 30')
        second = self.create('two', 'salary > 10')
        self.assertEqual(self.client.get('/api/rules/').get_json(), [first, second])
        self.assertEqual(self.client.get(f"/api/rules/{second['id']}").get_json(), second)

        response = self.client.delete(f"/api/rules/{first['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get('/api/rules/').get_json(), [second])
        self.assertEqual(self.client.get(f"/api/rules/{first['id']}").status_code, 404)
        self.assertEqual(self.client.delete(f"/api/rules/{first['id']}").status_code, 404)


class TestRuleStorage(unittest.TestCase):

    def setUp(self):
        self.db_fd, self.db_path = tempfile.mkstemp(suffix='.db')
        self.app = create_app({'DATABASE': self.db_path, 'TESTING': True})

    def tearDown(self):
        os.close(self.db_fd)
        os.unlink(self.db_path)

    def test_save_and_load_rule(self):
        with self.app.app_context():
            conn = get_db()
            saved = save_rule_to_db(conn, Rule.from_string('r', "(age > 30 AND active == true) OR score <= 2.5"))
            self.assertIsNotNone(saved.id)
            self.assertEqual(get_rule_by_id(conn, saved.id), saved)
            self.assertIsNone(get_rule_by_id(conn, saved.id + 1))

    def test_stored_ast_is_json_document(self):
        with self.app.app_context():
            saved = save_rule_to_db(get_db(), Rule.from_string('r', 'age > 30'))
        conn = sqlite3.connect(self.db_path)
        try:
            rule_ast = conn.execute('SELECT rule_ast FROM rules WHERE id = ?', (saved.id,)).fetchone()[0]
        finally:
            conn.close()
        self.assertIn('"type": "operand"', rule_ast)


if __name__ == '__main__':
    unittest.main()
