from mission_control.factory import create_app

app = create_app()
