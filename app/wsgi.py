from app.sopdesk import create_app

app = create_app()
