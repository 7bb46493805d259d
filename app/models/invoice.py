"""Invoice sequence model.

A named counter row. The invoice service increments it with a single
UPDATE inside the caller's transaction, so numbers are gap-free per
committed paid transition.
"""

from app.extensions import db


class InvoiceSequence(db.Model):
    __tablename__ = "invoice_sequences"

    name = db.Column(db.String(50), primary_key=True)  # e.g. "invoice"
    value = db.Column(db.BigInteger, nullable=False, default=0)

    def __repr__(self):
        return f"<InvoiceSequence {self.name}={self.value}>"
