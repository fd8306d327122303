from app.examflow import create_app

app = create_app()
