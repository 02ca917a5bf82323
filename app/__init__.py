"""
SquadRoll application package.

Layered the same way for every feature:

  app/repositories/  pure I/O, JSON documents in Redis with a TTL.
  app/services/      business logic such as membership rules, common-game
                     resolution, Steam sign-in and the session cookie.

``squadroll_web.init_services`` wires repositories and services together
once per process; route handlers in ``squadroll_web.py`` only call services.
"""
