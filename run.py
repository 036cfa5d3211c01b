"""
Application runner script
Provides startup and management commands
"""
import asyncio
import uvicorn
import sys

from pnr_tracker.utils.config import settings


def main():
    """Run the FastAPI application"""
    print("=" * 60)
    print(f"🚀 Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    print("=" * 60)
    print(f"📍 Host: {settings.HOST}")
    print(f"📍 Port: {settings.PORT}")
    print(f"⏰ Scheduler: {'enabled' if settings.SCHEDULER_ENABLED else 'disabled'} ({settings.SCHEDULER_CRON})")
    print(f"📚 Documentation: http://{settings.HOST}:{settings.PORT}/docs")
    print(f"📊 Health Check: http://{settings.HOST}:{settings.PORT}/health")
    print("=" * 60)
    print()

    uvicorn.run(
        "pnr_tracker.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )


def init_db():
    """Initialize database"""
    from pnr_tracker.utils.database import init_db
    print("🗄️  Initializing database...")
    init_db()
    print("✅ Database initialized successfully!")


def reset_db():
    """Reset database (CAUTION: Deletes all data)"""
    from pnr_tracker.utils.database import db_manager

    response = input("⚠️  WARNING: This will delete all data! Are you sure? (yes/no): ")
    if response.lower() == 'yes':
        print("🔄 Resetting database...")
        db_manager.reset_database()
        print("✅ Database reset successfully!")
    else:
        print("❌ Operation cancelled")


def check_now():
    """Run one status check outside the server and deliver queued notifications"""
    from pnr_tracker.utils.database import init_db
    from pnr_tracker.utils.dependencies import build_scheduler

    async def _run():
        scheduler = build_scheduler()
        stats = await scheduler.trigger_manual_check()
        delivered = await scheduler.notification_queue.process_once()
        return stats, delivered

    init_db()
    print("🔍 Checking all active PNRs...")
    stats, delivered = asyncio.run(_run())

    run_stats = stats.last_run_stats
    if run_stats is None:
        print("❌ Check failed, see log output")
        return

    print(f"✅ Checked {run_stats.total_records} records in {run_stats.processing_time_ms}ms")
    print(f"   Successful: {run_stats.successful_checks}")
    print(f"   Failed:     {run_stats.failed_checks}")
    print(f"   Changes:    {run_stats.status_changes}")
    print(f"   Retired:    {run_stats.retired_records}")
    print(f"📧 Notifications delivered: {delivered}")


if __name__ == "__main__":
    if len(sys.argv) > 1:
        command = sys.argv[1]

        if command == "init-db":
            init_db()
        elif command == "reset-db":
            reset_db()
        elif command == "check-now":
            check_now()
        elif command == "run":
            main()
        else:
            print(f"Unknown command: {command}")
            print("Available commands: run, init-db, reset-db, check-now")
    else:
        main()
