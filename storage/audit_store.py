import json
import sqlite3
from datetime import datetime, timezone
from uuid import uuid4

def _now():
    return datetime.now(timezone.utc).isoformat()

class AuditStore:
    def __init__(self, db_path="audits.db"):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        self.conn.execute("""CREATE TABLE IF NOT EXISTS templates(
                          id TEXT PRIMARY KEY, nome TEXT,
                          tipo_atividade TEXT, criado_em TEXT)""")

        self.conn.execute("""CREATE TABLE IF NOT EXISTS template_items(
                          id TEXT PRIMARY KEY, template_id TEXT,
                          ordem INTEGER, ativo INTEGER,
                          payload TEXT)""")

        self.conn.execute("""CREATE TABLE IF NOT EXISTS units(
                          id TEXT PRIMARY KEY, nome TEXT,
                          criado_em TEXT)""")

        self.conn.execute("""CREATE TABLE IF NOT EXISTS audits(
                          id TEXT PRIMARY KEY, unidade_id TEXT,
                          template_id TEXT, status TEXT,
                          data_inicio TEXT, data_fim TEXT,
                          latitude_inicio REAL, longitude_inicio REAL,
                          latitude_fim REAL, longitude_fim REAL,
                          pontuacao_total REAL, observacoes_gerais TEXT)""")

        self.conn.execute("""CREATE TABLE IF NOT EXISTS audit_items(
                          id TEXT PRIMARY KEY, auditoria_id TEXT,
                          template_item_id TEXT, ordem INTEGER,
                          resposta TEXT, observacao TEXT,
                          descricao_ia TEXT, descricao_nao_conformidade TEXT,
                          referencia_legal TEXT, plano_acao_sugerido TEXT,
                          pontuacao REAL DEFAULT 0)""")

        self.conn.execute("""CREATE TABLE IF NOT EXISTS photos(
                          id TEXT PRIMARY KEY, auditoria_item_id TEXT,
                          url TEXT, mime_type TEXT, tamanho_bytes INTEGER,
                          conteudo BLOB, analise_ia TEXT,
                          data_captura TEXT)""")
        self.conn.commit()

    def add_template(self, template_id, name, activity_type, items):
        self.conn.execute("""INSERT OR REPLACE INTO templates
                          (id, nome, tipo_atividade, criado_em)
                          VALUES (?, ?, ?, ?)""",
                          (template_id, name, activity_type, _now()))

        for order, item in enumerate(items):
            self.conn.execute("""INSERT OR REPLACE INTO template_items
                              (id, template_id, ordem, ativo, payload)
                              VALUES (?, ?, ?, ?, ?)""",
                              (item["id"], template_id, item.get("ordem", order),
                               int(item.get("ativo", True)), json.dumps(item, ensure_ascii=False)))
        self.conn.commit()

    def add_unit(self, unit_id, name):
        self.conn.execute("INSERT OR REPLACE INTO units VALUES (?, ?, ?)",
                          (unit_id, name, _now()))
        self.conn.commit()

    def get_template(self, template_id):
        return self.conn.execute("SELECT * FROM templates WHERE id = ?",
                                 (template_id,)).fetchone()

    def get_unit(self, unit_id):
        return self.conn.execute("SELECT * FROM units WHERE id = ?",
                                 (unit_id,)).fetchone()

    def active_template_items(self, template_id):
        cursor = self.conn.execute("""SELECT id, ordem FROM template_items
                                   WHERE template_id = ? AND ativo = 1
                                   ORDER BY ordem ASC""", (template_id,))
        return cursor.fetchall()

    def template_item(self, template_item_id) -> dict:
        row = self.conn.execute("SELECT payload FROM template_items WHERE id = ?",
                                (template_item_id,)).fetchone()
        return json.loads(row["payload"]) if row else None

    def create_audit(self, audit_id, unit_id, template_id, latitude, longitude):
        self.conn.execute("""INSERT INTO audits
                          (id, unidade_id, template_id, status, data_inicio,
                          latitude_inicio, longitude_inicio)
                          VALUES (?, ?, ?, 'em_andamento', ?, ?, ?)""",
                          (audit_id, unit_id, template_id, _now(), latitude, longitude))

        for template_item in self.active_template_items(template_id):
            self.conn.execute("""INSERT INTO audit_items
                              (id, auditoria_id, template_item_id, ordem, resposta)
                              VALUES (?, ?, ?, ?, 'nao_avaliado')""",
                              (uuid4().hex, audit_id, template_item["id"], template_item["ordem"]))
        self.conn.commit()

    def get_audit(self, audit_id):
        return self.conn.execute("SELECT * FROM audits WHERE id = ?",
                                 (audit_id,)).fetchone()

    def get_items(self, audit_id):
        cursor = self.conn.execute("""SELECT * FROM audit_items
                                   WHERE auditoria_id = ?
                                   ORDER BY ordem ASC""", (audit_id,))
        return cursor.fetchall()

    def get_item(self, audit_id, item_id):
        return self.conn.execute("""SELECT * FROM audit_items
                                 WHERE id = ? AND auditoria_id = ?""",
                                 (item_id, audit_id)).fetchone()

    def update_item(self, item_id, fields: dict):
        columns = ", ".join(f"{column} = ?" for column in fields)
        self.conn.execute(f"UPDATE audit_items SET {columns} WHERE id = ?",
                          (*fields.values(), item_id))
        self.conn.commit()

    def add_photo(self, photo_id, item_id, url, mime_type, content: bytes):
        self.conn.execute("""INSERT INTO photos
                          (id, auditoria_item_id, url, mime_type, tamanho_bytes,
                          conteudo, data_captura)
                          VALUES (?, ?, ?, ?, ?, ?, ?)""",
                          (photo_id, item_id, url, mime_type, len(content), content, _now()))
        self.conn.commit()

    def get_photos(self, item_id):
        cursor = self.conn.execute("""SELECT id, url, analise_ia FROM photos
                                   WHERE auditoria_item_id = ?
                                   ORDER BY data_captura ASC, rowid ASC""", (item_id,))
        return cursor.fetchall()

    def get_photo(self, item_id, photo_id):
        return self.conn.execute("""SELECT * FROM photos
                                 WHERE id = ? AND auditoria_item_id = ?""",
                                 (photo_id, item_id)).fetchone()

    def delete_photo(self, photo_id):
        self.conn.execute("DELETE FROM photos WHERE id = ?", (photo_id,))
        self.conn.commit()

    def update_photo_analysis(self, photo_id, analysis):
        self.conn.execute("UPDATE photos SET analise_ia = ? WHERE id = ?",
                          (analysis, photo_id))
        self.conn.commit()

    def finalize_audit(self, audit_id, score, general_observations, latitude, longitude):
        self.conn.execute("""UPDATE audits
                          SET status = 'finalizada', data_fim = ?,
                          pontuacao_total = ?,
                          observacoes_gerais = COALESCE(?, observacoes_gerais),
                          latitude_fim = COALESCE(?, latitude_fim),
                          longitude_fim = COALESCE(?, longitude_fim)
                          WHERE id = ?""",
                          (_now(), score, general_observations, latitude, longitude, audit_id))
        self.conn.commit()

    def reopen_audit(self, audit_id):
        self.conn.execute("""UPDATE audits
                          SET status = 'em_andamento', data_fim = NULL,
                          latitude_fim = NULL, longitude_fim = NULL
                          WHERE id = ?""", (audit_id,))
        self.conn.commit()
