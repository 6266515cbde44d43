from app import create_app

if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        from models import db
        from services.settings import ensure_default_settings
        db.create_all()
        ensure_default_settings()
        db.session.commit()
        print('Initialized database and default library settings')
