class Path:
    """URL constants for the SIMA portal.

    Contains the base hostname and the endpoints used for login, CAPTCHA
    retrieval, and the e-learning pages.
    """

    HOSTNAME = "https://sima.unsiq.ac.id/"
    INDEX = f"{HOSTNAME}index.php"
    LOGIN = f"{HOSTNAME}login.php?l={INDEX}"
    CAPTCHA = f"{HOSTNAME}gen_cap.php"
    LOGIN_CHECK = f"{HOSTNAME}cekadm.php?l=https://sima.unsiq.ac.id"
    ELEARNING = f"{HOSTNAME}kuliah/"

    @classmethod
    def content_listing(cls, content_id: str) -> str:
        return f"{cls.ELEARNING}?m={content_id}"

    @classmethod
    def elearning_link(cls, href: str) -> str:
        """Resolves an href found on an e-learning page ("?m=..", "materi_hadir.php?..")."""
        if href.startswith("http"):
            return href
        return f"{cls.ELEARNING}{href.lstrip('/')}"
