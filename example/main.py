import asyncio

from scoring_server import ScoringServer
from skill_drill_client.api_client import SkillDrillApiClient
from skill_drill_client.config import ClientSettings, SessionFlowConfig
from skill_drill_client.models import PollingConfig
from skill_drill_client.session_flow import SessionFlowController

ANSWERS = [
    "I would first clarify the stakeholder's goals before proposing options.",
    "I'd quantify the trade-offs and share them in writing.",
    "I would follow up with a short summary and agreed next steps.",
]


async def main():
    PORT = 8000
    server = ScoringServer(
        total_questions=len(ANSWERS), scoring_time=2.0, result_generation_time=3.0
    )
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    results_ready = asyncio.Event()

    def question_shown(question, progress):
        if question is not None:
            print(f"Question {progress.current_question}/{progress.total_questions}: {question['text']}")

    def scoring_progress(progress):
        print(f"Scoring: {progress.completed}/{progress.total} - {progress.message}")

    async def assessment_complete(assessment_id):
        print(f"Assessment {assessment_id} scored, fetching results")
        await flow.fetch_results()

    def results_received(results):
        print(f"Final score: {results.final_score}")
        results_ready.set()

    def results_failed(message, retry):
        print(f"Results error: {message}")
        results_ready.set()

    config = SessionFlowConfig(
        next_question_max_wait=3.0,
        result_polling=PollingConfig(initial_delay=0.5, max_delay=4.0, backoff_factor=2.0),
    )

    async with SkillDrillApiClient(
        ClientSettings(base_url=f"http://localhost:{PORT}")
    ) as api:
        flow = SessionFlowController(
            api,
            config,
            on_question=question_shown,
            on_scoring_progress=scoring_progress,
            on_assessment_complete=assessment_complete,
            on_results=results_received,
            on_results_error=results_failed,
        )

        try:
            await flow.start_session("communication")
            for answer in ANSWERS:
                while flow.state.value != "awaiting_answer":
                    await asyncio.sleep(0.1)
                print(f"Answering: {answer}")
                await flow.submit_answer(answer)

            await asyncio.wait_for(results_ready.wait(), timeout=60.0)
        except asyncio.TimeoutError:
            print("Assessment did not finish in time")
        except Exception as e:
            print(f"Error occurred: {e}")
        finally:
            flow.teardown()

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
