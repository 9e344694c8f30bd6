from mongoengine import Document, StringField, FileField, DateTimeField, ObjectIdField

from Utils.identifiers import utcnow

FILE_PURPOSES = ("report_photo", "verification_document")


class StoredFile(Document):
    filename = StringField(required=True, unique=True)
    file = FileField(required=True)  # Stored in GridFS
    content_type = StringField(default="image/jpeg")
    purpose = StringField(choices=FILE_PURPOSES, required=True)
    uploaded_by = ObjectIdField()
    uploaded_at = DateTimeField(default=utcnow)

    meta = {'collection': 'stored_files'}
