from app.eservices import create_app

app = create_app()
